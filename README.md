# moco

A library for taking backups of a replicated MySQL cluster, restoring them
to a point in time, and validating the cluster and backup policy resources
that describe such a cluster.

## What it does

- **Backups**: `moco.backup.BackupManager` orders the cluster's Pods by the
  index at the end of their names and collects the `server_uuid` of every
  ready Pod (`get_uuid_set`). It then picks a source with `choose_pod`: a
  ready replica on the first backup, or, on later backups, the same instance
  as last time when its `server_uuid` is unchanged. It takes a full dump,
  uploads it as `dump.tar`, and from the second backup on uploads the binary
  logs written since the previous backup as `binlog.tar.zst`. The result is
  written to the cluster's `BackupStatus`. If the binary logs cannot be
  backed up, the full backup still counts and a warning is recorded.
- **Restores**: `moco.restore.RestoreManager.restore` waits for the target
  Pod and its mysqld. It finds the newest full dump at or before the restore
  point with `find_nearest_dump` and loads it. When the binary logs taken at
  the same time are there and the restore point is not the dump time itself,
  it replays them up to the restore point. At the end it sets the cluster's
  `restored_time`.
- **Resource validation**: `moco.validation.MySQLClusterAdmission` and
  `moco.backuppolicy.BackupPolicyAdmission` check cluster and backup policy
  specifications. On create and update they raise `moco.errors.InvalidError`,
  with one `moco.errors.FieldError` per problem. `MySQLClusterAdmission.default`
  adds the cluster finalizer and picks a random positive `server_id_base`
  when none is set. `BackupPolicyAdmission.validate_delete` raises
  `ValueError` while a cluster in the same namespace still refers to the
  policy.
- **Naming**: `moco.cluster.MySQLCluster` derives the names of the Pods,
  Services, Secrets, CronJobs, Jobs and Roles that belong to a cluster, for
  example `pod_name(0)` gives `moco-<name>-0` and `pod_hostname(0)` gives
  `moco-<name>-0.moco-<name>.<namespace>.svc`.
- **Quantities**: `moco.quantity.parse_quantity` turns strings such as `1Gi`,
  `500m` or `1e3` into exact `Fraction` values. Volume claim templates use it
  in `PersistentVolumeClaim.storage_size`.

## Object keys

Backups are stored under `moco/<namespace>/<name>/<time>/<file>`. The time is
in UTC and formatted as `YYYYMMDD-HHMMSS`; a naive datetime is taken as UTC.

```python
from datetime import datetime, timezone
from moco.keys import calc_key, calc_prefix, parse_backup_time

when = datetime(2021, 5, 25, 11, 22, 33, tzinfo=timezone.utc)
calc_key("test", "single", "dump.tar", when)
# 'moco/test/single/20210525-112233/dump.tar'
calc_prefix("test", "single")
# 'moco/test/single'
parse_backup_time("20210525-112233") == when
# True
```

## Cron schedules

Backup policy schedules and log rotation schedules are parsed by
`moco.cron.parse_standard`. It accepts five-field cron expressions (with
month and weekday names), descriptors such as `@daily`, `@every <duration>`,
and an optional `TZ=` or `CRON_TZ=` prefix.

```python
from datetime import datetime, timezone
from moco.cron import CronError, parse_standard

schedule = parse_standard("*/5 * * * *")
schedule.matches(datetime(2021, 5, 25, 11, 25, tzinfo=timezone.utc))
# True

try:
    parse_standard("hoge fuga")
except CronError as exc:
    print(exc)
```

An `@every` schedule matches the moments that are whole multiples of its
interval since the epoch.

## Plugging in your environment

The backup and restore managers talk to the outside world only through the
protocols in `moco.interfaces`:

- `Operator`: one mysqld instance (`ping`, `get_server_status`, `dump_full`,
  `get_binlogs`, `dump_binlog`, `prepare_restore`, `load_dump`,
  `load_binlog`, `finish_restore`, `close`).
- `Bucket`: object storage (`put`, `get`, `list`).
- `ClusterClient`: reading clusters and Pods, updating cluster status and
  recording events. Status updates that lose a race should raise
  `moco.interfaces.ConflictError`; the managers then retry them a few times.

`BackupManager` also takes an `operator_factory`, called as
`factory(host, port, user, password, threads)`, and a `gtid_reader` that
returns the GTID set recorded in a dump directory. `RestoreManager` takes an
`operator_factory` of the same shape. The `tar` and `zstd` programs must be
on `PATH`.

Errors are raised as exceptions: `moco.backup.BackupError`,
`moco.restore.RestoreError`, and `moco.restore.BadConnectionError`. The last
one is raised when the database connection does not yet have the privileges
needed to restore, so the whole restore should be started again.

## What it does not do

This package has no command-line program and no admission webhook server. It
has no client for the cluster API, no object storage client and no database
operator of its own. Those come from the implementations of `Operator`,
`Bucket` and `ClusterClient` that you supply.