"""Admission checks and defaulting for MySQLCluster resources."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from .cluster import MySQLCluster, MySQLClusterSpec, PersistentVolumeClaim
from .cron import CronError, parse_standard
from .errors import FORBIDDEN, INTERNAL, INVALID, REQUIRED, FieldError, InvalidError

MYSQL_CLUSTER_FINALIZER = "moco.cybozu.com/mysqlcluster"

MYSQL_DATA_VOLUME_NAME = "mysql-data"

MYSQLD_CONTAINER_NAME = "mysqld"
AGENT_CONTAINER_NAME = "agent"
INIT_CONTAINER_NAME = "moco-init"
SLOW_QUERY_LOG_AGENT_CONTAINER_NAME = "slow-log"
EXPORTER_CONTAINER_NAME = "mysqld-exporter"

MYSQL_PORT = 3306
MYSQL_X_PORT = 33060
MYSQL_ADMIN_PORT = 33062
MYSQL_HEALTH_PORT = 9081
MYSQL_PORT_NAME = "mysql"
MYSQL_X_PORT_NAME = "mysqlx"
MYSQL_ADMIN_PORT_NAME = "mysql-admin"
MYSQL_HEALTH_PORT_NAME = "health"

RESERVED_PORTS = frozenset({MYSQL_PORT, MYSQL_X_PORT, MYSQL_ADMIN_PORT, MYSQL_HEALTH_PORT})
RESERVED_PORT_NAMES = frozenset(
    {MYSQL_PORT_NAME, MYSQL_X_PORT_NAME, MYSQL_ADMIN_PORT_NAME, MYSQL_HEALTH_PORT_NAME}
)
RESERVED_VOLUME_NAMES = frozenset(
    {
        "tmp",
        "run",
        "var-log",
        "mysql-conf-d",
        "mysql-init-conf-d",
        "my-cnf-secret",
        "slow-fluent-bit-config",
    }
)

_DEFAULT_CLASS_ANNOTATIONS = (
    "storageclass.kubernetes.io/is-default-class",
    "storageclass.beta.kubernetes.io/is-default-class",
)


@dataclass
class StorageClass:
    """The parts of a storage class that matter for volume expansion."""

    name: str
    annotations: dict[str, str] = field(default_factory=dict)
    allow_volume_expansion: bool | None = None
    provisioner: str = ""


class StorageClassReader(Protocol):
    def get_storage_class(self, name: str) -> StorageClass: ...

    def list_storage_classes(self) -> Iterable[StorageClass]: ...


def is_volume_expansion_supported(storage_class: StorageClass) -> bool:
    """Tell whether volumes of this class may be expanded."""
    return bool(storage_class.allow_volume_expansion)


def is_default_storage_class(storage_class: StorageClass) -> bool:
    """Tell whether the class is annotated as the cluster default."""
    if not storage_class.annotations:
        return False
    return any(
        storage_class.annotations.get(key) == "true" for key in _DEFAULT_CLASS_ANNOTATIONS
    )


def get_default_storage_class(reader: StorageClassReader) -> StorageClass:
    """Return the default storage class, or raise LookupError if there is none."""
    for storage_class in reader.list_storage_classes():
        if is_default_storage_class(storage_class):
            return storage_class
    raise LookupError("not found default storage class")


def _validate_restore(spec: MySQLClusterSpec) -> list[FieldError]:
    restore = spec.restore
    if restore is None:
        return []
    path = "spec.restore"
    errors: list[FieldError] = []
    if len(restore.source_name) < 1:
        errors.append(
            FieldError(INVALID, f"{path}.sourceName", restore.source_name,
                       "should be at least 1 chars long")
        )
    if len(restore.source_namespace) < 1:
        errors.append(
            FieldError(INVALID, f"{path}.sourceNamespace", restore.source_namespace,
                       "should be at least 1 chars long")
        )
    if restore.restore_point is None:
        errors.append(FieldError(REQUIRED, f"{path}.restorePoint"))
    errors.extend(restore.job_config.validate(f"{path}.jobConfig"))
    return errors


def _validate_containers(spec: MySQLClusterSpec) -> list[FieldError]:
    errors: list[FieldError] = []
    base = "spec.podTemplate.spec"
    path = f"{base}.containers"
    containers: list[dict[str, Any]] = spec.pod_template.spec.get("containers") or []
    mysqld_index = -1
    for i, container in enumerate(containers):
        name = container.get("name")
        if name is None:
            errors.append(FieldError(FORBIDDEN, f"{path}[{i}]", None, "container name is required"))
            continue
        if name == MYSQLD_CONTAINER_NAME:
            mysqld_index = i
        if name == AGENT_CONTAINER_NAME:
            errors.append(FieldError(FORBIDDEN, f"{path}[{i}]", None, "reserved container name"))
        if name == SLOW_QUERY_LOG_AGENT_CONTAINER_NAME and not spec.disable_slow_query_log_container:
            errors.append(FieldError(FORBIDDEN, f"{path}[{i}]", None, "reserved container name"))
        if name == EXPORTER_CONTAINER_NAME and spec.collectors:
            errors.append(FieldError(FORBIDDEN, f"{path}[{i}]", None, "reserved container name"))

    if mysqld_index == -1:
        errors.append(
            FieldError(REQUIRED, path, None,
                       f"required container {MYSQLD_CONTAINER_NAME} is missing")
        )
    else:
        ports_path = f"{path}[{mysqld_index}].ports"
        for i, port in enumerate(containers[mysqld_index].get("ports") or []):
            number = port.get("containerPort")
            if number is not None and number in RESERVED_PORTS:
                errors.append(FieldError(INVALID, f"{ports_path}[{i}]", number, "reserved port"))
            port_name = port.get("name")
            if port_name is not None and port_name in RESERVED_PORT_NAMES:
                errors.append(
                    FieldError(INVALID, f"{ports_path}[{i}]", port_name, "reserved port name")
                )

    init_path = f"{base}.initContainers"
    for i, container in enumerate(spec.pod_template.spec.get("initContainers") or []):
        name = container.get("name")
        if name is None:
            errors.append(
                FieldError(FORBIDDEN, f"{init_path}[{i}]", None, "init container name is required")
            )
            continue
        if name == INIT_CONTAINER_NAME:
            errors.append(
                FieldError(INVALID, f"{init_path}[{i}]", name, "reserved init container name")
            )

    volumes_path = f"{base}.volumes"
    for i, volume in enumerate(spec.pod_template.spec.get("volumes") or []):
        name = volume.get("name")
        if name is not None and name in RESERVED_VOLUME_NAMES:
            errors.append(FieldError(INVALID, f"{volumes_path}[{i}]", name, "reserved volume name"))
    return errors


def validate_create(spec: MySQLClusterSpec) -> list[FieldError]:
    """Return every problem found in a spec for a new cluster."""
    errors: list[FieldError] = []
    pvc_path = "spec.volumeClaimTemplates"
    templates = spec.volume_claim_templates
    if not any(vc.name == MYSQL_DATA_VOLUME_NAME for vc in templates):
        errors.append(
            FieldError(REQUIRED, pvc_path, None,
                       f"required volume claim template {MYSQL_DATA_VOLUME_NAME} is missing")
        )
    for vc in templates:
        resources = vc.spec.get("resources")
        if resources is None or resources.get("requests") is None:
            errors.append(
                FieldError(REQUIRED, pvc_path, None,
                           f"required volume claim template {vc.name} storage requests is missing")
            )

    if spec.server_id_base <= 0:
        errors.append(
            FieldError(INVALID, "spec.serverIDBase", spec.server_id_base,
                       "serverIDBase must be a positive integer")
        )

    if spec.log_rotation_schedule:
        try:
            parse_standard(spec.log_rotation_schedule)
        except CronError as exc:
            errors.append(
                FieldError(INVALID, "spec.logRotationSchedule", spec.log_rotation_schedule, str(exc))
            )

    if spec.replicas % 2 == 0:
        errors.append(
            FieldError(INVALID, "spec.replicas", spec.replicas,
                       "replicas must be a positive odd number")
        )
    if spec.replicas <= 0:
        errors.append(
            FieldError(INVALID, "spec.replicas", spec.replicas,
                       "replicas must be a positive integer")
        )

    errors.extend(_validate_containers(spec))
    errors.extend(_validate_restore(spec))
    return errors


def _validate_volume_expansion(
    spec: MySQLClusterSpec, reader: StorageClassReader, indices: list[int]
) -> list[FieldError]:
    errors: list[FieldError] = []
    path = "spec.volumeClaimTemplates"
    for idx in indices:
        pvc = spec.volume_claim_templates[idx]
        class_name = pvc.spec.get("storageClassName")
        if class_name is not None:
            sc_path = f"{path}[{idx}].spec.storageClassName"
            try:
                storage_class = reader.get_storage_class(class_name)
            except Exception as exc:
                errors.append(
                    FieldError(INTERNAL, sc_path, None,
                               f"failed to get storage class {class_name}: {exc}")
                )
                continue
            if not is_volume_expansion_supported(storage_class):
                errors.append(
                    FieldError(FORBIDDEN, sc_path, None,
                               f'storage class "{class_name}" is not allowed to expand volume')
                )
        else:
            item_path = f"{path}[{idx}]"
            try:
                storage_class = get_default_storage_class(reader)
            except Exception as exc:
                errors.append(
                    FieldError(INTERNAL, item_path, None, f"failed to get storage class: {exc}")
                )
                continue
            if not is_volume_expansion_supported(storage_class):
                errors.append(
                    FieldError(
                        FORBIDDEN, item_path, None,
                        f'default storage class "{storage_class.name}" is not allowed to expand volume',
                    )
                )
    return errors


def validate_update(
    spec: MySQLClusterSpec, old: MySQLClusterSpec, reader: StorageClassReader
) -> list[FieldError]:
    """Return every problem found in changing ``old`` into ``spec``."""
    errors: list[FieldError] = []
    if spec.replicas < old.replicas:
        errors.append(
            FieldError(FORBIDDEN, "spec.replicas", None, "decreasing replicas is not supported yet")
        )
    if spec.replication_source_secret_name is not None:
        path = "spec.replicationSourceSecretName"
        if old.replication_source_secret_name is None:
            errors.append(
                FieldError(FORBIDDEN, path, None,
                           "replication can be initiated only with new clusters")
            )
        elif spec.replication_source_secret_name != old.replication_source_secret_name:
            errors.append(
                FieldError(FORBIDDEN, path, None,
                           "replication source secret name cannot be modified")
            )
    if spec.restore != old.restore:
        errors.append(FieldError(FORBIDDEN, "spec.restore", None, "not editable"))

    old_pvcs: dict[str, PersistentVolumeClaim] = {
        pvc.name: pvc for pvc in old.volume_claim_templates
    }
    expansion_targets = [
        i
        for i, pvc in enumerate(spec.volume_claim_templates)
        if pvc.name in old_pvcs and pvc.storage_size() > old_pvcs[pvc.name].storage_size()
    ]
    if expansion_targets:
        errors.extend(_validate_volume_expansion(spec, reader, expansion_targets))

    errors.extend(validate_create(spec))
    return errors


@dataclass
class MySQLClusterAdmission:
    """Defaults and validates MySQLCluster objects."""

    client: StorageClassReader | None = None

    def default(self, cluster: MySQLCluster) -> None:
        """Add the finalizer and pick a random server-id base when none is set."""
        if MYSQL_CLUSTER_FINALIZER not in cluster.finalizers:
            cluster.finalizers.append(MYSQL_CLUSTER_FINALIZER)
        if cluster.spec.server_id_base == 0:
            raw = int.from_bytes(secrets.token_bytes(4), "little")
            cluster.spec.server_id_base = (raw & (0x7FFFFFFF >> 1)) + 1

    def validate_create(self, cluster: MySQLCluster) -> list[str]:
        """Return warnings, or raise InvalidError if the cluster is invalid."""
        errors = validate_create(cluster.spec)
        if errors:
            raise InvalidError("MySQLCluster", cluster.name, errors)
        return []

    def validate_update(self, old: MySQLCluster, new: MySQLCluster) -> list[str]:
        """Return warnings, or raise InvalidError if the change is not allowed."""
        errors = validate_update(new.spec, old.spec, self.client)
        if errors:
            raise InvalidError("MySQLCluster", new.name, errors)
        return []

    def validate_delete(self, cluster: MySQLCluster) -> list[str]:
        """Deletion is always allowed."""
        return []