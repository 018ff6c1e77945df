"""Restoring a MySQL cluster from a full dump and binary logs in a bucket."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterable

from .backup import _retry_on_conflict
from .cluster import MySQLCluster
from .interfaces import Bucket, ClusterClient, Operator, OperatorFactory, Pod, ServerStatus
from .keys import BINLOG_FILENAME, DUMP_FILENAME, calc_prefix, parse_backup_time
from .validation import MYSQL_PORT

ADMIN_USER = "moco-admin"
EVENT_RESTORED = "Restored"

_WAIT_ATTEMPTS = 600
_COPY_CHUNK = 1 << 16


class RestoreError(Exception):
    """Raised when a restoration cannot be completed."""


class BadConnectionError(RestoreError):
    """The connection has not yet reflected the latest privileges of the user."""

    def __init__(self) -> None:
        super().__init__("the connection hasn't reflected the latest user's privileges")


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _feed(source: BinaryIO, process: subprocess.Popen) -> None:
    """Copy ``source`` into the standard input of ``process`` and close it."""
    try:
        shutil.copyfileobj(source, process.stdin, _COPY_CHUNK)
    except BrokenPipeError:
        pass
    finally:
        try:
            process.stdin.close()
        except BrokenPipeError:
            pass


class RestoreManager:
    """Restores a new cluster from the backups of another one."""

    def __init__(
        self,
        client: ClusterClient,
        bucket: Bucket,
        work_dir: str | os.PathLike[str],
        src_namespace: str,
        src_name: str,
        namespace: str,
        name: str,
        password: str,
        threads: int,
        restore_point: datetime,
        operator_factory: OperatorFactory,
        logger: logging.Logger | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.client = client
        self.bucket = bucket
        self.work_dir = Path(work_dir)
        self.namespace = namespace
        self.name = name
        self.password = password
        self.threads = threads
        self.key_prefix = calc_prefix(src_namespace, src_name)
        self.restore_point = _as_utc(restore_point)
        self.operator_factory = operator_factory
        self.poll_interval = poll_interval

    def _wait_for_pod(self, pod_name: str) -> Pod | None:
        self.log.info("waiting for a pod to become ready name=%s", pod_name)
        pod: Pod | None = None
        for _ in range(_WAIT_ATTEMPTS):
            time.sleep(self.poll_interval)
            try:
                pod = self.client.get_pod(self.namespace, pod_name)
            except Exception:
                continue
            if pod.pod_ip:
                break
        return pod

    def _wait_for_mysqld(self, op: Operator, pod_name: str) -> None:
        self.log.info("waiting for the mysqld to become ready name=%s", pod_name)
        for _ in range(_WAIT_ATTEMPTS):
            time.sleep(self.poll_interval)
            try:
                op.ping()
            except Exception:
                continue
            try:
                status: ServerStatus = op.get_server_status()
            except Exception as exc:
                # Privileges may not be granted yet; the caller retries from the start.
                self.log.error("failed to get server status: %s", exc)
                raise BadConnectionError() from exc
            if status.super_read_only:
                return

    def restore(self) -> None:
        """Load the nearest dump, apply binary logs up to the restore point, record it."""
        target = MySQLCluster(name=self.name, namespace=self.namespace)
        pod_name = target.pod_name(0)

        pod = self._wait_for_pod(pod_name)
        if pod is None:
            raise RestoreError(f"failed to get pod {self.namespace}/{pod_name}")

        try:
            op = self.operator_factory(
                pod.pod_ip, MYSQL_PORT, ADMIN_USER, self.password, self.threads
            )
        except Exception as exc:
            raise RestoreError(f"failed to create an operator: {exc}") from exc

        try:
            self._wait_for_mysqld(op, pod_name)

            try:
                keys = self.bucket.list(self.key_prefix)
            except Exception as exc:
                raise RestoreError(f"failed to list object keys: {exc}") from exc

            dump_key, binlog_key, backup_time = self.find_nearest_dump(keys)
            if not dump_key:
                raise RestoreError("no available backup")

            self.log.info("restoring from a backup dump=%s binlog=%s", dump_key, binlog_key)

            try:
                op.prepare_restore()
            except Exception as exc:
                raise RestoreError(f"failed to prepare instance for restoration: {exc}") from exc

            try:
                self._load_dump(op, dump_key)
            except Exception as exc:
                raise RestoreError(f"failed to load dump: {exc}") from exc
            self.log.info("loaded dump successfully")

            if backup_time != self.restore_point and binlog_key:
                try:
                    self._apply_binlog(op, binlog_key)
                except Exception as exc:
                    raise RestoreError(f"failed to apply transactions: {exc}") from exc
                self.log.info("applied binlog successfully")

            try:
                op.finish_restore()
            except Exception as exc:
                raise RestoreError(f"failed to finalize the restoration: {exc}") from exc
        finally:
            op.close()

        def update() -> MySQLCluster:
            cluster = self.client.get_cluster(self.namespace, self.name)
            cluster.status.restored_time = datetime.now(timezone.utc)
            self.client.update_cluster_status(cluster)
            return cluster

        try:
            cluster = _retry_on_conflict(update)
        except Exception as exc:
            raise RestoreError(f"failed to update MySQLCluster status: {exc}") from exc

        try:
            self.client.create_event(cluster, EVENT_RESTORED)
        except Exception:
            self.log.exception("failed to create an event for restoration completion")
        self.log.info("restoration finished successfully")

    def find_nearest_dump(self, keys: Iterable[str]) -> tuple[str, str, datetime | None]:
        """Find the dump and binlog keys nearest to, and not after, the restore point.

        Returns the dump key, the binlog key taken at the same time (or ""),
        and the time of the dump (or None when none was found).
        """
        nearest: datetime | None = None
        nearest_dump = ""
        nearest_binlog = ""

        for key in sorted(keys):
            is_binlog = key.endswith(BINLOG_FILENAME)
            is_dump = key.endswith(DUMP_FILENAME)
            if not is_binlog and not is_dump:
                self.log.info("skipping garbage key=%s", key)
                continue

            try:
                taken = parse_backup_time(posixpath.basename(posixpath.dirname(key)))
            except ValueError as exc:
                self.log.error("invalid object key key=%s: %s", key, exc)
                continue
            if taken > self.restore_point:
                break

            if is_binlog:
                nearest_binlog = key
                continue

            nearest_dump = key
            nearest = taken
            if posixpath.dirname(nearest_dump) != posixpath.dirname(nearest_binlog):
                nearest_binlog = ""

        return nearest_dump, nearest_binlog, nearest

    def _load_dump(self, op: Operator, key: str) -> None:
        try:
            reader = self.bucket.get(key)
        except Exception as exc:
            raise RestoreError(f"failed to get object {key}: {exc}") from exc

        dump_dir = self.work_dir / "dump"
        try:
            with reader:
                tar_args = ["tar", "-C", str(self.work_dir), "-x", "-f", "-"]
                try:
                    tar = subprocess.Popen(tar_args, stdin=subprocess.PIPE)
                except OSError as exc:
                    raise RestoreError(f"failed to untar dump file: {exc}") from exc
                with tar:
                    _feed(reader, tar)
                    if tar.wait() != 0:
                        raise RestoreError(
                            f"failed to untar dump file: exit status {tar.returncode}"
                        )
            op.load_dump(str(dump_dir))
        finally:
            shutil.rmtree(dump_dir, ignore_errors=True)

    def _apply_binlog(self, op: Operator, key: str) -> None:
        try:
            reader = self.bucket.get(key)
        except Exception as exc:
            raise RestoreError(f"failed to get object {key}: {exc}") from exc

        binlog_dir = self.work_dir / "binlog"
        tmp_dir = self.work_dir / "tmp"
        try:
            with reader:
                zstd_args = ["zstd", "-d", "--no-progress"]
                try:
                    zstd = subprocess.Popen(
                        zstd_args, stdin=subprocess.PIPE, stdout=subprocess.PIPE
                    )
                except OSError as exc:
                    raise RestoreError(f"failed to start zstd: {exc}") from exc
                with zstd:
                    tar_args = ["tar", "-C", str(self.work_dir), "-x", "-f", "-"]
                    try:
                        tar = subprocess.Popen(tar_args, stdin=zstd.stdout)
                    except OSError as exc:
                        zstd.kill()
                        raise RestoreError(f"failed to run tar: {exc}") from exc
                    finally:
                        zstd.stdout.close()
                    with tar:
                        _feed(reader, zstd)
                        if tar.wait() != 0:
                            zstd.kill()
                            raise RestoreError(
                                f"failed to run tar: exit status {tar.returncode}"
                            )
                    if zstd.wait() != 0:
                        raise RestoreError(
                            f"zstd exited abnormally: exit status {zstd.returncode}"
                        )

            try:
                tmp_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
            except OSError as exc:
                raise RestoreError(f"failed to create {tmp_dir}: {exc}") from exc
            op.load_binlog(str(binlog_dir), str(tmp_dir), self.restore_point)
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            shutil.rmtree(binlog_dir, ignore_errors=True)