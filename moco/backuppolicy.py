"""The BackupPolicy resource and its admission checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol

from .cron import CronError, parse_standard
from .errors import INVALID, NOT_SUPPORTED, FieldError, InvalidError
from .jobconfig import JobConfig


class ConcurrencyPolicy(str, Enum):
    """How concurrent runs of a backup job are treated."""

    ALLOW = "Allow"
    FORBID = "Forbid"
    REPLACE = "Replace"


def _minimum_zero(path: str, value: int | None) -> list[FieldError]:
    if value is not None and value < 0:
        return [FieldError(INVALID, path, value, "should be greater than or equal to 0")]
    return []


@dataclass
class BackupPolicySpec:
    """Configuration of periodic backups for a cluster."""

    schedule: str = ""
    job_config: JobConfig = field(default_factory=JobConfig)
    starting_deadline_seconds: int | None = None
    concurrency_policy: ConcurrencyPolicy | str = ConcurrencyPolicy.ALLOW
    active_deadline_seconds: int | None = None
    backoff_limit: int | None = None
    successful_jobs_history_limit: int | None = None
    failed_jobs_history_limit: int | None = None

    def validate(self) -> list[FieldError]:
        """Return every problem found in the spec."""
        errors: list[FieldError] = []
        try:
            parse_standard(self.schedule)
        except CronError as exc:
            errors.append(FieldError(INVALID, "spec.schedule", self.schedule, str(exc)))

        errors.extend(self.job_config.validate("spec.jobConfig"))

        try:
            ConcurrencyPolicy(self.concurrency_policy)
        except ValueError:
            supported = ", ".join(f'"{p.value}"' for p in ConcurrencyPolicy)
            errors.append(
                FieldError(
                    NOT_SUPPORTED,
                    "spec.concurrencyPolicy",
                    str(self.concurrency_policy),
                    f"supported values: {supported}",
                )
            )

        errors.extend(_minimum_zero("spec.backoffLimit", self.backoff_limit))
        errors.extend(
            _minimum_zero("spec.successfulJobsHistoryLimit", self.successful_jobs_history_limit)
        )
        errors.extend(_minimum_zero("spec.failedJobsHistoryLimit", self.failed_jobs_history_limit))
        return errors


@dataclass
class BackupPolicy:
    """A namespaced backup policy referenced from clusters."""

    name: str
    namespace: str
    spec: BackupPolicySpec = field(default_factory=BackupPolicySpec)


class _ClusterReader(Protocol):
    def list_clusters(self, namespace: str) -> Iterable[Any]: ...


@dataclass
class BackupPolicyAdmission:
    """Validates BackupPolicy creation, update and deletion."""

    client: _ClusterReader | None = None

    def validate_create(self, policy: BackupPolicy) -> list[str]:
        """Return warnings, or raise InvalidError if the policy is invalid."""
        errors = policy.spec.validate()
        if errors:
            raise InvalidError("BackupPolicy", policy.name, errors)
        return []

    def validate_update(self, old: BackupPolicy, new: BackupPolicy) -> list[str]:
        """Validate the new version of the policy."""
        return self.validate_create(new)

    def validate_delete(self, policy: BackupPolicy) -> list[str]:
        """Refuse deletion while a cluster in the namespace refers to the policy."""
        for cluster in self.client.list_clusters(policy.namespace):
            referenced = cluster.spec.backup_policy_name
            if referenced is None:
                continue
            if referenced == policy.name:
                raise ValueError(
                    f"MySQLCluster {cluster.namespace}/{cluster.name} has a reference to this policy"
                )
        return []