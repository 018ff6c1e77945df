"""Object keys under which backup files are stored in a bucket."""

from __future__ import annotations

import posixpath
import re
from datetime import datetime, timezone

KEY_PREFIX = "moco"
BACKUP_TIME_FORMAT = "%Y%m%d-%H%M%S"
DUMP_FILENAME = "dump.tar"
BINLOG_FILENAME = "binlog.tar.zst"

_BACKUP_TIME_RE = re.compile(r"\d{8}-\d{6}")


def _join(*parts: str) -> str:
    present = [part for part in parts if part]
    if not present:
        return ""
    return posixpath.normpath("/".join(present))


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def calc_key(cluster_ns: str, cluster_name: str, filename: str, dt: datetime) -> str:
    """Return the key of a backup file taken at ``dt``; naive times count as UTC."""
    stamp = _as_utc(dt).strftime(BACKUP_TIME_FORMAT)
    return _join(KEY_PREFIX, cluster_ns, cluster_name, stamp, filename)


def calc_prefix(cluster_ns: str, cluster_name: str) -> str:
    """Return the key prefix shared by every backup of a cluster."""
    return _join(KEY_PREFIX, cluster_ns, cluster_name)


def parse_backup_time(text: str) -> datetime:
    """Parse the time component of a key into an aware UTC datetime."""
    if not _BACKUP_TIME_RE.fullmatch(text):
        raise ValueError(f"cannot parse {text!r} as backup time (expected YYYYMMDD-hhmmss)")
    return datetime.strptime(text, BACKUP_TIME_FORMAT).replace(tzinfo=timezone.utc)