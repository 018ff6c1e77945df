"""The MySQLCluster resource and the types it is made of."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from fractions import Fraction
from typing import Any

from .errors import GROUP
from .jobconfig import JobConfig
from .quantity import parse_quantity

VERSION = "v1beta2"
GROUP_VERSION = f"{GROUP}/{VERSION}"
KIND = "MySQLCluster"

CONDITION_INITIALIZED = "Initialized"
CONDITION_AVAILABLE = "Available"
CONDITION_HEALTHY = "Healthy"
CONDITION_STATEFUL_SET_READY = "StatefulSetReady"
CONDITION_RECONCILE_SUCCESS = "ReconcileSuccess"
CONDITION_RECONCILIATION_ACTIVE = "ReconciliationActive"
CONDITION_CLUSTERING_ACTIVE = "ClusteringActive"

_PREFIX = "moco-"


@dataclass
class ObjectMeta:
    """Name, labels and annotations of an embedded object."""

    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class PersistentVolumeClaim:
    """A volume claim template; ``spec`` holds the claim spec in its JSON shape."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name

    def storage_size(self) -> Fraction:
        """Return the requested storage, or zero when none is requested."""
        resources = self.spec.get("resources")
        if resources is not None and resources.get("requests") is not None:
            storage = resources["requests"].get("storage")
            if storage is not None:
                return parse_quantity(storage)
        return Fraction(0)

    def to_core_v1(self) -> dict[str, Any]:
        """Return a full PersistentVolumeClaim object for this template."""
        metadata: dict[str, Any] = {"name": self.metadata.name}
        if self.metadata.labels:
            metadata["labels"] = dict(self.metadata.labels)
        if self.metadata.annotations:
            metadata["annotations"] = dict(self.metadata.annotations)
        spec = copy.deepcopy(self.spec)
        if spec.get("volumeMode") is None:
            spec["volumeMode"] = "Filesystem"
        return {"metadata": metadata, "spec": spec, "status": {"phase": "Pending"}}


@dataclass
class ServiceTemplate:
    """Metadata and spec for a generated Service."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: dict[str, Any] | None = None


class OverwriteableContainerName(str, Enum):
    """Containers whose system-provided definition may be overwritten."""

    AGENT = "agent"
    INIT = "moco-init"
    SLOW_QUERY_LOG_AGENT = "slow-log"
    EXPORTER = "mysqld-exporter"

    def __str__(self) -> str:
        return self.value


@dataclass
class OverwriteContainer:
    """Resources to set on a system-provided container."""

    name: OverwriteableContainerName
    resources: dict[str, Any] | None = None


@dataclass
class PodTemplateSpec:
    """Template of the MySQL Pod; ``spec`` holds the Pod spec in its JSON shape."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: dict[str, Any] = field(default_factory=dict)
    overwrite_containers: list[OverwriteContainer] = field(default_factory=list)


@dataclass
class RestoreSpec:
    """Parameters for point-in-time recovery from another cluster."""

    source_name: str = ""
    source_namespace: str = ""
    restore_point: datetime | None = None
    job_config: JobConfig = field(default_factory=JobConfig)


@dataclass
class BackupStatus:
    """Status of the last successful backup."""

    time: datetime | None = None
    elapsed: timedelta = timedelta(0)
    source_index: int = 0
    source_uuid: str = ""
    uuid_set: dict[str, str] = field(default_factory=dict)
    binlog_filename: str = ""
    gtid_set: str = ""
    dump_size: int = 0
    binlog_size: int = 0
    work_dir_usage: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class ReconcileInfo:
    """Information recorded by the last reconciliation."""

    generation: int = 0
    reconcile_version: int = 0


@dataclass
class MySQLClusterSpec:
    """Desired state of a MySQL cluster."""

    replicas: int = 1
    pod_template: PodTemplateSpec = field(default_factory=PodTemplateSpec)
    volume_claim_templates: list[PersistentVolumeClaim] = field(default_factory=list)
    primary_service_template: ServiceTemplate | None = None
    replica_service_template: ServiceTemplate | None = None
    mysql_config_map_name: str | None = None
    replication_source_secret_name: str | None = None
    collectors: list[str] = field(default_factory=list)
    server_id_base: int = 0
    max_delay_seconds: int | None = 60
    startup_wait_seconds: int = 3600
    log_rotation_schedule: str = ""
    backup_policy_name: str | None = None
    restore: RestoreSpec | None = None
    disable_slow_query_log_container: bool = False


@dataclass
class MySQLClusterStatus:
    """Observed state of a MySQL cluster."""

    conditions: list[dict[str, Any]] = field(default_factory=list)
    current_primary_index: int = 0
    synced_replicas: int = 0
    errant_replicas: int = 0
    errant_replica_list: list[int] = field(default_factory=list)
    backup: BackupStatus = field(default_factory=BackupStatus)
    restored_time: datetime | None = None
    cloned: bool = False
    reconcile_info: ReconcileInfo = field(default_factory=ReconcileInfo)


@dataclass
class MySQLCluster:
    """A MySQL cluster and the names of the objects generated for it."""

    name: str = ""
    namespace: str = ""
    spec: MySQLClusterSpec = field(default_factory=MySQLClusterSpec)
    status: MySQLClusterStatus = field(default_factory=MySQLClusterStatus)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    generation: int = 0

    def prefixed_name(self) -> str:
        return _PREFIX + self.name

    def pod_name(self, index: int) -> str:
        return f"{self.prefixed_name()}-{index}"

    def user_secret_name(self) -> str:
        return _PREFIX + self.name

    def my_cnf_secret_name(self) -> str:
        return "moco-my-cnf-" + self.name

    def controller_secret_name(self) -> str:
        return f"mysql-{self.namespace}.{self.name}"

    def headless_service_name(self) -> str:
        return self.prefixed_name()

    def primary_service_name(self) -> str:
        return self.prefixed_name() + "-primary"

    def replica_service_name(self) -> str:
        return self.prefixed_name() + "-replica"

    def pod_hostname(self, index: int) -> str:
        return f"{self.pod_name(index)}.{self.headless_service_name()}.{self.namespace}.svc"

    def slow_query_log_agent_config_map_name(self) -> str:
        return f"moco-slow-log-agent-config-{self.name}"

    def certificate_name(self) -> str:
        return f"moco-agent-{self.namespace}.{self.name}"

    def grpc_secret_name(self) -> str:
        return f"{self.prefixed_name()}-grpc"

    def backup_cron_job_name(self) -> str:
        return f"moco-backup-{self.name}"

    def backup_role_name(self) -> str:
        return f"moco-backup-{self.name}"

    def restore_job_name(self) -> str:
        return f"moco-restore-{self.name}"

    def restore_role_name(self) -> str:
        return f"moco-restore-{self.name}"