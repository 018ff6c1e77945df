import copy
from datetime import datetime, timezone
from unittest import mock

import pytest

from moco.cluster import (
    MySQLCluster,
    MySQLClusterSpec,
    ObjectMeta,
    PersistentVolumeClaim,
    PodTemplateSpec,
    RestoreSpec,
)
from moco.errors import FORBIDDEN, INTERNAL, InvalidError
from moco.jobconfig import BucketConfig, JobConfig
from moco.validation import (
    MYSQL_CLUSTER_FINALIZER,
    MySQLClusterAdmission,
    StorageClass,
    get_default_storage_class,
    is_default_storage_class,
    is_volume_expansion_supported,
    validate_create,
    validate_update,
)


class FakeReader:
    def __init__(self, classes):
        self.classes = {sc.name: sc for sc in classes}

    def get_storage_class(self, name):
        return self.classes[name]

    def list_storage_classes(self):
        return list(self.classes.values())


def standard_reader():
    return FakeReader(
        [
            StorageClass(
                name="default",
                annotations={"storageclass.kubernetes.io/is-default-class": "true"},
                allow_volume_expansion=True,
                provisioner="dummy",
            ),
            StorageClass(
                name="not-support-volume-expansion",
                allow_volume_expansion=False,
                provisioner="dummy",
            ),
        ]
    )


def make_pvc(name, size="1Gi", storage_class="default"):
    spec = {"resources": {"requests": {"storage": size}}}
    if storage_class is not None:
        spec["storageClassName"] = storage_class
    return PersistentVolumeClaim(metadata=ObjectMeta(name=name), spec=spec)


def make_cluster():
    return MySQLCluster(
        name="test",
        namespace="default",
        spec=MySQLClusterSpec(
            replicas=1,
            pod_template=PodTemplateSpec(spec={"containers": [{"name": "mysqld"}]}),
            volume_claim_templates=[make_pvc("mysql-data")],
        ),
    )


def make_restore(**overrides):
    values = dict(
        source_name="test",
        source_namespace="test",
        restore_point=datetime(2021, 5, 26, tzinfo=timezone.utc),
        job_config=JobConfig(
            service_account_name="foo",
            bucket_config=BucketConfig(bucket_name="mybucket"),
        ),
    )
    values.update(overrides)
    return RestoreSpec(**values)


@pytest.fixture
def admission():
    return MySQLClusterAdmission(client=standard_reader())


def create(admission, cluster):
    admission.default(cluster)
    return admission.validate_create(cluster)


def test_sane_defaults(admission):
    cluster = make_cluster()
    assert create(admission, cluster) == []
    assert MYSQL_CLUSTER_FINALIZER in cluster.finalizers
    assert cluster.spec.server_id_base > 0


def test_default_does_not_duplicate_finalizer(admission):
    cluster = make_cluster()
    admission.default(cluster)
    admission.default(cluster)
    assert cluster.finalizers.count(MYSQL_CLUSTER_FINALIZER) == 1


@pytest.mark.parametrize(
    "raw, expected",
    [(b"\xff\xff\xff\xff", 0x40000000), (b"\x00\x00\x00\x00", 1), (b"\x05\x00\x00\x00", 6)],
)
def test_default_server_id_base_range(admission, raw, expected):
    cluster = make_cluster()
    with mock.patch("moco.validation.secrets.token_bytes", return_value=raw):
        admission.default(cluster)
    assert cluster.spec.server_id_base == expected


def test_default_keeps_server_id_base(admission):
    cluster = make_cluster()
    cluster.spec.server_id_base = 100
    admission.default(cluster)
    assert cluster.spec.server_id_base == 100


def test_deny_without_mysql_data(admission):
    cluster = make_cluster()
    cluster.spec.volume_claim_templates = []
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert any(e.field == "spec.volumeClaimTemplates" for e in info.value.errors)


def test_deny_without_storage_size(admission):
    cluster = make_cluster()
    del cluster.spec.volume_claim_templates[0].spec["resources"]
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert "storage requests is missing" in str(info.value)


def test_deny_negative_server_id_base(admission):
    cluster = make_cluster()
    cluster.spec.server_id_base = -3
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert [e.field for e in info.value.errors] == ["spec.serverIDBase"]


def test_allow_valid_log_rotation_schedule(admission):
    cluster = make_cluster()
    cluster.spec.log_rotation_schedule = "@every 30s"
    assert create(admission, cluster) == []


def test_deny_invalid_log_rotation_schedule(admission):
    cluster = make_cluster()
    cluster.spec.log_rotation_schedule = "hoge fuga"
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert [e.field for e in info.value.errors] == ["spec.logRotationSchedule"]


def test_deny_without_mysqld_container(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"] = []
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert "required container mysqld is missing" in str(info.value)


def test_deny_without_container_name(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"].append({"image": "image:dev"})
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert info.value.errors[0].field == "spec.podTemplate.spec.containers[1]"
    assert info.value.errors[0].kind == FORBIDDEN


def test_deny_without_init_container_name(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["initContainers"] = [{"image": "image:dev"}]
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert info.value.errors[0].field == "spec.podTemplate.spec.initContainers[0]"


@pytest.mark.parametrize(
    "port",
    [
        {"containerPort": 3306},
        {"name": "mysql"},
        {"containerPort": 33062},
        {"name": "mysql-admin"},
        {"containerPort": 33060},
        {"name": "mysqlx"},
        {"containerPort": 9081},
        {"name": "health"},
    ],
)
def test_deny_reserved_port(admission, port):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"][0]["ports"] = [port]
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert info.value.errors[0].field == "spec.podTemplate.spec.containers[0].ports[0]"


def test_allow_unreserved_port(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"][0]["ports"] = [
        {"containerPort": 8080, "name": "web"}
    ]
    assert create(admission, cluster) == []


@pytest.mark.parametrize(
    "volume",
    ["tmp", "run", "var-log", "mysql-conf-d", "mysql-init-conf-d", "my-cnf-secret",
     "slow-fluent-bit-config"],
)
def test_deny_reserved_volume_names(admission, volume):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["volumes"] = [{"name": volume}]
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert "reserved volume name" in str(info.value)


def test_deny_agent_container(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"].append({"name": "agent"})
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert "reserved container name" in str(info.value)


def test_deny_slow_log_container_if_not_disabled(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"].append({"name": "slow-log"})
    with pytest.raises(InvalidError):
        create(admission, cluster)


def test_allow_slow_log_container_if_disabled(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"].append({"name": "slow-log"})
    cluster.spec.disable_slow_query_log_container = True
    assert create(admission, cluster) == []


def test_deny_exporter_container_if_enabled(admission):
    cluster = make_cluster()
    cluster.spec.collectors = ["engine_innodb_status", "info_schema.innodb_metrics"]
    cluster.spec.pod_template.spec["containers"].append({"name": "mysqld-exporter"})
    with pytest.raises(InvalidError):
        create(admission, cluster)


def test_allow_exporter_container_if_not_enabled(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["containers"].append({"name": "mysqld-exporter"})
    assert create(admission, cluster) == []


def test_allow_non_reserved_init_containers(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["initContainers"] = [{"name": "foobar"}]
    assert create(admission, cluster) == []


def test_deny_moco_init_container(admission):
    cluster = make_cluster()
    cluster.spec.pod_template.spec["initContainers"] = [{"name": "moco-init"}]
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert "reserved init container name" in str(info.value)


def test_deny_decreasing_replicas(admission):
    cluster = make_cluster()
    cluster.spec.replicas = 3
    assert create(admission, cluster) == []
    updated = copy.deepcopy(cluster)
    updated.spec.replicas = 1
    with pytest.raises(InvalidError) as info:
        admission.validate_update(cluster, updated)
    assert info.value.errors[0].field == "spec.replicas"


@pytest.mark.parametrize("replicas", [4, -1, 0])
def test_deny_bad_replicas(admission, replicas):
    cluster = make_cluster()
    cluster.spec.replicas = replicas
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert all(e.field == "spec.replicas" for e in info.value.errors)


def test_deny_adding_replication_source_secret(admission):
    cluster = make_cluster()
    assert create(admission, cluster) == []
    updated = copy.deepcopy(cluster)
    updated.spec.replication_source_secret_name = "fuga"
    with pytest.raises(InvalidError) as info:
        admission.validate_update(cluster, updated)
    assert "only with new clusters" in str(info.value)


def test_deny_changing_replication_source_secret_name(admission):
    cluster = make_cluster()
    cluster.spec.replication_source_secret_name = "foo"
    assert create(admission, cluster) == []
    updated = copy.deepcopy(cluster)
    updated.spec.replication_source_secret_name = "bar"
    with pytest.raises(InvalidError) as info:
        admission.validate_update(cluster, updated)
    assert "cannot be modified" in str(info.value)


def test_allow_same_replication_source_secret(admission):
    cluster = make_cluster()
    cluster.spec.replication_source_secret_name = "foo"
    admission.default(cluster)
    updated = copy.deepcopy(cluster)
    assert admission.validate_update(cluster, updated) == []


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"source_name": ""}, "spec.restore.sourceName"),
        ({"source_namespace": ""}, "spec.restore.sourceNamespace"),
        ({"restore_point": None}, "spec.restore.restorePoint"),
        (
            {"job_config": JobConfig(bucket_config=BucketConfig(bucket_name="mybucket"))},
            "spec.restore.jobConfig.serviceAccountName",
        ),
        (
            {"job_config": JobConfig(service_account_name="foo")},
            "spec.restore.jobConfig.bucketConfig.bucketName",
        ),
        (
            {
                "job_config": JobConfig(
                    service_account_name="foo",
                    bucket_config=BucketConfig(bucket_name="mybucket", endpoint_url="hoge"),
                )
            },
            "spec.restore.jobConfig.bucketConfig.endpointURL",
        ),
    ],
)
def test_deny_invalid_restore_spec(admission, overrides, field):
    cluster = make_cluster()
    cluster.spec.restore = make_restore(**overrides)
    with pytest.raises(InvalidError) as info:
        create(admission, cluster)
    assert [e.field for e in info.value.errors] == [field]


def test_allow_valid_restore_spec(admission):
    cluster = make_cluster()
    cluster.spec.restore = make_restore(
        job_config=JobConfig(
            service_account_name="foo",
            bucket_config=BucketConfig(
                bucket_name="mybucket", endpoint_url="https://foo.bar.svc:9000"
            ),
        )
    )
    assert create(admission, cluster) == []


def test_deny_editing_restore_spec(admission):
    cluster = make_cluster()
    cluster.spec.restore = make_restore()
    assert create(admission, cluster) == []
    updated = copy.deepcopy(cluster)
    updated.spec.restore = None
    with pytest.raises(InvalidError) as info:
        admission.validate_update(cluster, updated)
    assert [e.field for e in info.value.errors] == ["spec.restore"]


def expansion_cluster(admission):
    cluster = make_cluster()
    cluster.spec.volume_claim_templates = [
        make_pvc("mysql-data"),
        make_pvc("foo", storage_class="not-support-volume-expansion"),
    ]
    assert create(admission, cluster) == []
    return cluster


def test_allow_storage_size_expansion(admission):
    cluster = expansion_cluster(admission)
    updated = copy.deepcopy(cluster)
    updated.spec.volume_claim_templates[0].spec["resources"]["requests"]["storage"] = "10Gi"
    assert admission.validate_update(cluster, updated) == []


def test_deny_expansion_for_unsupported_storage_class(admission):
    cluster = expansion_cluster(admission)
    updated = copy.deepcopy(cluster)
    updated.spec.volume_claim_templates[1].spec["resources"]["requests"]["storage"] = "10Gi"
    with pytest.raises(InvalidError) as info:
        admission.validate_update(cluster, updated)
    err = info.value.errors[0]
    assert err.field == "spec.volumeClaimTemplates[1].spec.storageClassName"
    assert err.kind == FORBIDDEN


def test_allow_shrinking_unsupported_storage_class(admission):
    cluster = expansion_cluster(admission)
    updated = copy.deepcopy(cluster)
    updated.spec.volume_claim_templates[1].spec["resources"]["requests"]["storage"] = "500Mi"
    assert admission.validate_update(cluster, updated) == []


def test_expansion_unknown_storage_class_is_internal_error():
    old = make_cluster().spec
    old.server_id_base = 1
    old.volume_claim_templates[0].spec["storageClassName"] = "missing"
    new = copy.deepcopy(old)
    new.volume_claim_templates[0].spec["resources"]["requests"]["storage"] = "2Gi"
    errors = validate_update(new, old, standard_reader())
    assert [(e.kind, e.field) for e in errors] == [
        (INTERNAL, "spec.volumeClaimTemplates[0].spec.storageClassName")
    ]


def test_expansion_uses_default_storage_class():
    old = make_cluster().spec
    old.server_id_base = 1
    old.volume_claim_templates = [make_pvc("mysql-data", storage_class=None)]
    new = copy.deepcopy(old)
    new.volume_claim_templates[0].spec["resources"]["requests"]["storage"] = "2Gi"
    assert validate_update(new, old, standard_reader()) == []

    no_default = FakeReader([StorageClass(name="plain", allow_volume_expansion=True)])
    errors = validate_update(new, old, no_default)
    assert [(e.kind, e.field) for e in errors] == [(INTERNAL, "spec.volumeClaimTemplates[0]")]

    denied = FakeReader(
        [
            StorageClass(
                name="std",
                annotations={"storageclass.beta.kubernetes.io/is-default-class": "true"},
                allow_volume_expansion=False,
            )
        ]
    )
    errors = validate_update(new, old, denied)
    assert [(e.kind, e.detail) for e in errors] == [
        (FORBIDDEN, 'default storage class "std" is not allowed to expand volume')
    ]


def test_validate_create_function_collects_all_errors():
    spec = MySQLClusterSpec(replicas=2, server_id_base=0)
    fields = [e.field for e in validate_create(spec)]
    assert fields == [
        "spec.volumeClaimTemplates",
        "spec.serverIDBase",
        "spec.replicas",
        "spec.podTemplate.spec.containers",
    ]


def test_storage_class_helpers():
    assert is_volume_expansion_supported(StorageClass(name="a", allow_volume_expansion=True))
    assert not is_volume_expansion_supported(StorageClass(name="a"))
    assert not is_default_storage_class(StorageClass(name="a"))
    assert not is_default_storage_class(
        StorageClass(name="a", annotations={"storageclass.kubernetes.io/is-default-class": "false"})
    )
    assert get_default_storage_class(standard_reader()).name == "default"
    with pytest.raises(LookupError, match="not found default storage class"):
        get_default_storage_class(FakeReader([]))


def test_validate_delete_always_allowed(admission):
    assert admission.validate_delete(make_cluster()) == []


def test_invalid_error_message_names_cluster(admission):
    cluster = make_cluster()
    cluster.spec.server_id_base = -3
    with pytest.raises(InvalidError) as info:
        admission.validate_create(cluster)
    assert str(info.value).startswith('MySQLCluster.moco.cybozu.com "test" is invalid')