"""Parameters of the backup and restore job Pods."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any

from .errors import INVALID, NOT_SUPPORTED, FieldError

BACKEND_TYPES = ("s3", "gcs")
_ENDPOINT_PATTERN = "^https?://.*"
_ENDPOINT_RE = re.compile(_ENDPOINT_PATTERN)


def _min_length(path: str, value: str) -> FieldError:
    return FieldError(INVALID, path, value, "should be at least 1 chars long")


@dataclass
class BucketConfig:
    """How to reach an object storage bucket."""

    bucket_name: str = ""
    region: str = ""
    endpoint_url: str = ""
    use_path_style: bool = False
    backend_type: str = "s3"
    ca_cert: str = ""

    def validate(self, path: str) -> list[FieldError]:
        """Return the problems found, with field paths under ``path``."""
        errors = []
        if len(self.bucket_name) < 1:
            errors.append(_min_length(f"{path}.bucketName", self.bucket_name))
        if self.endpoint_url and not _ENDPOINT_RE.match(self.endpoint_url):
            errors.append(
                FieldError(
                    INVALID,
                    f"{path}.endpointURL",
                    self.endpoint_url,
                    f"should match '{_ENDPOINT_PATTERN}'",
                )
            )
        if self.backend_type and self.backend_type not in BACKEND_TYPES:
            supported = ", ".join(f'"{name}"' for name in BACKEND_TYPES)
            errors.append(
                FieldError(
                    NOT_SUPPORTED,
                    f"{path}.backendType",
                    self.backend_type,
                    f"supported values: {supported}",
                )
            )
        return errors


@dataclass
class JobConfig:
    """Settings shared by the backup and restore job Pods."""

    service_account_name: str = ""
    bucket_config: BucketConfig = field(default_factory=BucketConfig)
    work_volume: dict[str, Any] = field(default_factory=dict)
    threads: int = 4
    cpu: str | None = "4"
    max_cpu: str | None = None
    memory: str | None = "4Gi"
    max_memory: str | None = None
    env_from: list[dict[str, Any]] = field(default_factory=list)
    env: list[dict[str, Any]] = field(default_factory=list)
    affinity: dict[str, Any] | None = None
    volumes: list[dict[str, Any]] = field(default_factory=list)
    volume_mounts: list[dict[str, Any]] = field(default_factory=list)

    def validate(self, path: str) -> list[FieldError]:
        """Return the problems found, with field paths under ``path``."""
        errors = []
        if len(self.service_account_name) < 1:
            errors.append(_min_length(f"{path}.serviceAccountName", self.service_account_name))
        errors.extend(self.bucket_config.validate(f"{path}.bucketConfig"))
        if self.threads < 1:
            errors.append(
                FieldError(
                    INVALID,
                    f"{path}.threads",
                    self.threads,
                    "should be greater than or equal to 1",
                )
            )
        return errors

    def deep_copy(self) -> JobConfig:
        """Return an independent copy."""
        return copy.deepcopy(self)