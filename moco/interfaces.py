"""What the backup and restore managers need from their collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO, Callable, Iterable, Mapping, Protocol

from .cluster import MySQLCluster


@dataclass
class ServerStatus:
    """Status of a mysqld instance relevant to backups."""

    super_read_only: bool = False
    uuid: str = ""
    current_binlog: str = ""


@dataclass
class Pod:
    """A Pod running a mysqld instance; ``conditions`` maps condition type to status."""

    name: str = ""
    namespace: str = ""
    pod_ip: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    conditions: dict[str, str] = field(default_factory=dict)

    def is_ready(self) -> bool:
        """Tell whether the Pod's Ready condition is True."""
        return self.conditions.get("Ready") == "True"


class ConflictError(Exception):
    """Raised by a client when an update lost a race with another writer."""


class Operator(Protocol):
    """Operations on one mysqld instance used for backup and restoration."""

    def ping(self) -> None:
        """Raise if the instance cannot be reached."""

    def close(self) -> None:
        """Release the connection."""

    def get_server_status(self) -> ServerStatus:
        """Return the current server status."""

    def dump_full(self, directory: str) -> None:
        """Take a full dump into ``directory``."""

    def get_binlogs(self) -> list[str]:
        """Return the names of the binary log files."""

    def dump_binlog(self, directory: str, binlog_name: str, filter_gtid: str) -> None:
        """Dump binary logs from ``binlog_name`` on, skipping ``filter_gtid``."""

    def prepare_restore(self) -> None:
        """Make the instance ready to load data."""

    def load_dump(self, directory: str) -> None:
        """Load a full dump from ``directory``."""

    def load_binlog(self, binlog_dir: str, tmp_dir: str, restore_point: datetime) -> None:
        """Apply binary logs up to ``restore_point``."""

    def finish_restore(self) -> None:
        """Finalize the restoration."""


OperatorFactory = Callable[[str, int, str, str, int], Operator]


class Bucket(Protocol):
    """An object storage bucket."""

    def put(self, key: str, data: BinaryIO, object_size: int) -> None:
        """Store the stream under ``key``; ``object_size`` is a size hint."""

    def get(self, key: str) -> BinaryIO:
        """Return a readable stream of the object."""

    def list(self, prefix: str) -> list[str]:
        """Return the keys starting with ``prefix``."""


class ClusterClient(Protocol):
    """Access to cluster resources; updates raise ConflictError on a lost race."""

    def get_cluster(self, namespace: str, name: str) -> MySQLCluster:
        """Return the current MySQLCluster."""

    def list_pods(self, namespace: str, labels: Mapping[str, str]) -> Iterable[Pod]:
        """Return the Pods carrying all of ``labels``."""

    def get_pod(self, namespace: str, name: str) -> Pod:
        """Return one Pod."""

    def update_cluster_status(self, cluster: MySQLCluster) -> None:
        """Write the status of ``cluster``."""

    def create_event(self, cluster: MySQLCluster, reason: str) -> None:
        """Record an event about ``cluster``."""