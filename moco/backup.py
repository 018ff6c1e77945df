"""Taking full and incremental backups of a MySQL cluster into a bucket."""

from __future__ import annotations

import contextlib
import io
import logging
import os
import re
import shutil
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Mapping, Sequence, TypeVar

from .bytecounter import ByteCountWriter
from .cluster import BackupStatus, MySQLCluster
from .interfaces import (
    Bucket,
    ClusterClient,
    ConflictError,
    Operator,
    OperatorFactory,
    Pod,
)
from .keys import BINLOG_FILENAME, DUMP_FILENAME, calc_key
from .validation import MYSQL_PORT

LABEL_APP_NAME = "app.kubernetes.io/name"
LABEL_APP_INSTANCE = "app.kubernetes.io/instance"
LABEL_APP_CREATED_BY = "app.kubernetes.io/created-by"
APP_NAME_MYSQL = "mysql"
APP_CREATOR = "moco"
BACKUP_USER = "moco-backup"

EVENT_BACKUP_CREATED = "BackupCreated"
EVENT_BACKUP_NO_BINLOG = "BackupNoBinlog"

_INTEGER = re.compile(r"[+-]?\d+")
_T = TypeVar("_T")


class BackupError(Exception):
    """Raised when a backup cannot be taken."""


def _retry_on_conflict(action: Callable[[], _T], steps: int = 5, delay: float = 0.01) -> _T:
    for attempt in range(steps):
        try:
            return action()
        except ConflictError:
            if attempt == steps - 1:
                raise
            time.sleep(delay)
    raise AssertionError("unreachable")


class _TeeReader(io.RawIOBase):
    """Reads from a source and copies everything read into a sink."""

    def __init__(self, source: BinaryIO, sink: ByteCountWriter) -> None:
        super().__init__()
        self._source = source
        self._sink = sink

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        data = self._source.read(len(buffer))
        size = len(data)
        buffer[:size] = data
        if size:
            self._sink.write(data)
        return size


def _binlog_sort_key(name: str) -> tuple[str, int, str]:
    stem, _, suffix = name.rpartition(".")
    if suffix.isdigit():
        return stem, int(suffix), name
    return name, -1, name


def pod_is_ready(pod: Pod) -> bool:
    """Tell whether the Pod's Ready condition is True."""
    return pod.is_ready()


def dir_usage(directory: str | os.PathLike[str]) -> int:
    """Return the disk usage in bytes of a directory tree, the root included."""

    def usage(st: os.stat_result) -> int:
        blocks = getattr(st, "st_blocks", None)
        return blocks * 512 if blocks is not None else st.st_size

    total = usage(os.lstat(directory))
    pending = [os.fspath(directory)]
    while pending:
        with os.scandir(pending.pop()) as entries:
            for entry in entries:
                total += usage(entry.stat(follow_symlinks=False))
                if entry.is_dir(follow_symlinks=False):
                    pending.append(entry.path)
    return total


def get_idxs_with_unchanged_uuid(
    current: Mapping[str, str], last: Mapping[str, str]
) -> list[int]:
    """Return the sorted indices whose server_uuid is the same in both sets."""
    return sorted(
        int(key)
        for key, uuid in current.items()
        if key in last and last[key] == uuid and _INTEGER.fullmatch(key)
    )


class BackupManager:
    """Takes one backup of a cluster: a full dump plus binary logs since the last one."""

    def __init__(
        self,
        client: ClusterClient,
        bucket: Bucket,
        work_dir: str | os.PathLike[str],
        namespace: str,
        name: str,
        password: str,
        threads: int,
        operator_factory: OperatorFactory,
        gtid_reader: Callable[[str], str],
        logger: logging.Logger | None = None,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.client = client
        self.bucket = bucket
        self.work_dir = Path(work_dir)
        self.password = password
        self.threads = threads
        self.operator_factory = operator_factory
        self.gtid_reader = gtid_reader
        try:
            self.cluster: MySQLCluster = client.get_cluster(namespace, name)
        except Exception as exc:
            raise BackupError(f"failed to get MySQLCluster {namespace}/{name}: {exc}") from exc

        self.start_time: datetime | None = None
        self.source_index = 0
        self.status = None
        self.uuid_set: dict[str, str] = {}
        self.gtid_set = ""
        self.dump_size = 0
        self.binlog_size = 0
        self.work_dir_usage = 0
        self.warnings: list[str] = []

    def _new_operator(self, host: str) -> Operator:
        try:
            return self.operator_factory(host, MYSQL_PORT, BACKUP_USER, self.password, self.threads)
        except Exception as exc:
            raise BackupError(f"failed to create operator: {exc}") from exc

    def _ordered_pods(self) -> list[Pod]:
        cluster = self.cluster
        labels = {
            LABEL_APP_NAME: APP_NAME_MYSQL,
            LABEL_APP_INSTANCE: cluster.name,
            LABEL_APP_CREATED_BY: APP_CREATOR,
        }
        try:
            pods = list(self.client.list_pods(cluster.namespace, labels))
        except Exception as exc:
            raise BackupError(f"failed to get pod list: {exc}") from exc

        replicas = cluster.spec.replicas
        if len(pods) != replicas:
            raise BackupError(f"too few Pods for {cluster.namespace}/{cluster.name}")

        ordered: list[Pod | None] = [None] * replicas
        for pod in pods:
            suffix = pod.name.split("-")[-1]
            if not _INTEGER.fullmatch(suffix):
                raise BackupError(f"bad pod name: {pod.name}")
            index = int(suffix)
            if not 0 <= index < len(pods):
                raise BackupError(f"index out of range: {index}")
            ordered[index] = pod
        return ordered

    def backup(self) -> None:
        """Take the backup and record it in the cluster status."""
        pods = self._ordered_pods()

        try:
            self.uuid_set = self.get_uuid_set(pods)
        except Exception as exc:
            raise BackupError(f"failed to get server_uuid set: {exc}") from exc

        try:
            source_index, do_backup_binlog = self.choose_pod(pods)
        except Exception as exc:
            raise BackupError(f"failed to choose source instance: {exc}") from exc
        self.source_index = source_index

        op = self._new_operator(pods[source_index].pod_ip)
        try:
            try:
                self.status = op.get_server_status()
            except Exception as exc:
                raise BackupError(f"failed to get server status: {exc}") from exc

            self.start_time = datetime.now(timezone.utc)
            self.log.info(
                "chosen source index=%d time=%s uuid=%s binlog=%s",
                source_index,
                self.start_time.strftime("%Y%m%d-%H%M%S"),
                self.status.uuid,
                self.status.current_binlog,
            )

            try:
                self._backup_full(op)
            except Exception as exc:
                raise BackupError(f"failed to take a full dump: {exc}") from exc

            if do_backup_binlog:
                try:
                    self._backup_binlog(op)
                except Exception as exc:
                    try:
                        self.client.create_event(self.cluster, EVENT_BACKUP_NO_BINLOG)
                    except Exception:
                        self.log.exception("failed to create an event for no-binlog")
                    self.log.error("failed to backup binary logs: %s", exc)
                    self.warnings.append(f"failed to backup binary logs: {exc}")
        finally:
            op.close()

        elapsed = datetime.now(timezone.utc) - self.start_time

        def update() -> None:
            cluster = self.client.get_cluster(self.cluster.namespace, self.cluster.name)
            cluster.status.backup = BackupStatus(
                time=self.start_time,
                elapsed=elapsed,
                source_index=source_index,
                source_uuid=self.status.uuid,
                uuid_set=dict(self.uuid_set),
                binlog_filename=self.status.current_binlog,
                gtid_set=self.gtid_set,
                dump_size=self.dump_size,
                binlog_size=self.binlog_size,
                work_dir_usage=self.work_dir_usage,
                warnings=list(self.warnings),
            )
            self.client.update_cluster_status(cluster)

        try:
            _retry_on_conflict(update)
        except Exception as exc:
            raise BackupError(f"failed to update MySQLCluster status: {exc}") from exc

        try:
            self.client.create_event(self.cluster, EVENT_BACKUP_CREATED)
        except Exception:
            self.log.exception("failed to create an event for backup creation")
        self.log.info("backup finished successfully")

    def get_uuid_set(self, pods: Sequence[Pod]) -> dict[str, str]:
        """Return the server_uuid of every ready Pod, keyed by its index as text."""
        uuids: dict[str, str] = {}
        for index, pod in enumerate(pods):
            if not pod_is_ready(pod):
                continue
            op = self._new_operator(self.cluster.pod_hostname(index))
            try:
                status = op.get_server_status()
            except Exception:
                continue
            finally:
                op.close()
            uuids[str(index)] = status.uuid
        return uuids

    def _choose_any_ready(self, pods: Sequence[Pod], primary: int) -> int:
        for index, pod in enumerate(pods):
            if index != primary and pod_is_ready(pod):
                return index
        if pod_is_ready(pods[primary]):
            return primary
        raise BackupError("no ready pod exists")

    def choose_pod(self, pods: Sequence[Pod]) -> tuple[int, bool]:
        """Choose the Pod to back up from.

        Returns its index and whether binary logs should be backed up too.
        """
        primary = self.cluster.status.current_primary_index
        last = self.cluster.status.backup
        if last.time is None:
            return self._choose_any_ready(pods, primary), False

        choosable = get_idxs_with_unchanged_uuid(self.uuid_set, last.uuid_set)
        if not choosable:
            self.log.info("the server_uuid of all pods has changed or some pods are not ready")
            self.warnings.append("skip binlog backups because some binlog files may be missing")
            return self._choose_any_ready(pods, primary), False

        replicas = []
        for index in choosable:
            if index == primary:
                continue
            if index == last.source_index:
                return index, True
            replicas.append(index)
        if replicas:
            return replicas[0], True
        return primary, True

    def _make_dir(self, directory: Path, what: str) -> None:
        try:
            directory.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"failed to make {what} directory: {exc}") from exc

    @staticmethod
    def _start(args: list[str], name: str, **kwargs) -> subprocess.Popen:
        try:
            return subprocess.Popen(args, **kwargs)
        except OSError as exc:
            raise BackupError(f"failed to start {name} process: {exc}") from exc

    def _backup_full(self, op: Operator) -> None:
        dump_dir = self.work_dir / "dump"
        self._make_dir(dump_dir, "dump")
        try:
            op.dump_full(str(dump_dir))
            try:
                self.gtid_set = self.gtid_reader(str(dump_dir))
            except Exception as exc:
                raise BackupError(f"failed to get GTID set from the dump: {exc}") from exc
            try:
                usage = dir_usage(dump_dir)
            except OSError as exc:
                raise BackupError(f"failed to calculate dir usage: {exc}") from exc
            self.work_dir_usage = usage
            self.log.info("work dir usage (full dump) bytes=%d", usage)

            counter = ByteCountWriter()
            key = calc_key(self.cluster.namespace, self.cluster.name, DUMP_FILENAME, self.start_time)
            tar_args = ["tar", "-c", "-f", "-", "-C", str(self.work_dir), "dump"]
            with self._start(tar_args, "tar", stdout=subprocess.PIPE) as tar:
                try:
                    self.bucket.put(key, _TeeReader(tar.stdout, counter), usage)
                except Exception as exc:
                    raise BackupError(f"failed to put dump.tar: {exc}") from exc
                if tar.wait() != 0:
                    raise BackupError(f"tar command failed: exit status {tar.returncode}")

            self.dump_size = counter.written
            self.log.info("uploaded dump file key=%s bytes=%d", key, self.dump_size)
        finally:
            shutil.rmtree(dump_dir, ignore_errors=True)

    def _backup_binlog(self, op: Operator) -> None:
        binlog_dir = self.work_dir / "binlog"
        self._make_dir(binlog_dir, "binlog dump")
        try:
            last = self.cluster.status.backup
            binlog_name = last.binlog_filename
            if self.source_index != last.source_index:
                try:
                    binlogs = op.get_binlogs()
                except Exception as exc:
                    raise BackupError(f"failed to list binlog files: {exc}") from exc
                if not binlogs:
                    raise BackupError("no binlog files found")
                binlog_name = sorted(binlogs, key=_binlog_sort_key)[0]

            try:
                op.dump_binlog(str(binlog_dir), binlog_name, last.gtid_set)
            except Exception as exc:
                raise BackupError(f"failed to exec mysqlbinlog command: {exc}") from exc

            try:
                usage = dir_usage(binlog_dir)
            except OSError as exc:
                raise BackupError(f"failed to calculate dir usage: {exc}") from exc
            self.log.info("work dir usage (binlog) bytes=%d", usage)
            self.work_dir_usage = max(self.work_dir_usage, usage)

            counter = ByteCountWriter()
            key = calc_key(self.cluster.namespace, self.cluster.name, BINLOG_FILENAME, last.time)
            tar_args = ["tar", "-c", "-f", "-", "-C", str(self.work_dir), "binlog"]
            zstd_args = ["zstd", "--no-progress", f"-T{self.threads}"]
            with contextlib.ExitStack() as stack:
                tar = stack.enter_context(self._start(tar_args, "tar", stdout=subprocess.PIPE))
                try:
                    zstd = stack.enter_context(
                        self._start(zstd_args, "zstd", stdin=tar.stdout, stdout=subprocess.PIPE)
                    )
                finally:
                    tar.stdout.close()
                try:
                    self.bucket.put(key, _TeeReader(zstd.stdout, counter), usage)
                except Exception as exc:
                    raise BackupError(f"failed to put binlog.tar.zst: {exc}") from exc
                if tar.wait() != 0:
                    raise BackupError(f"tar command failed: exit status {tar.returncode}")
                if zstd.wait() != 0:
                    raise BackupError(f"zstd command failed: exit status {zstd.returncode}")

            self.binlog_size = counter.written
            self.log.info("uploaded binlog files key=%s bytes=%d", key, self.binlog_size)
        finally:
            shutil.rmtree(binlog_dir, ignore_errors=True)