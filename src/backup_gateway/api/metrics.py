"""Prometheus metrics for backup creation."""

from __future__ import annotations

import contextlib
import time
from collections.abc import Iterator

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from backup_gateway.logging import get_logger

log = get_logger(__name__)

_NAMESPACE = "backup_gateway"

SUCCESS_FAILED = 0
SUCCESS_OK = 1
SUCCESS_UNKNOWN = 2


class BackupMetrics:
    """Gauges and counters describing the most recent create-backup call.

    ``last_backup_success`` is 0 after a failure, 1 after a success and 2
    before any backup has finished.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.last_backup_start = Gauge(
            "last_backup_start", "Unix time the last backup started.",
            namespace=_NAMESPACE, registry=self.registry,
        )
        self.last_backup_end = Gauge(
            "last_backup_end", "Unix time the last backup finished.",
            namespace=_NAMESPACE, registry=self.registry,
        )
        self.last_backup_duration = Gauge(
            "last_backup_duration", "Duration of the last backup in seconds.",
            namespace=_NAMESPACE, registry=self.registry,
        )
        self.last_backup_success = Gauge(
            "last_backup_success", "0 failed, 1 succeeded, 2 unknown.",
            namespace=_NAMESPACE, registry=self.registry,
        )
        self.successful_backups = Counter(
            "successful_backups", "Number of successful backups.",
            namespace=_NAMESPACE, registry=self.registry,
        )
        self.failed_backups = Counter(
            "failed_backups", "Number of failed backups.",
            namespace=_NAMESPACE, registry=self.registry,
        )
        self.last_backup_success.set(SUCCESS_UNKNOWN)

    @contextlib.contextmanager
    def track_backup(self) -> Iterator[None]:
        """Record start, end, duration and outcome of the wrapped backup."""
        started = time.time()
        self.last_backup_start.set(started)
        ok = False
        try:
            yield
            ok = True
        finally:
            finished = time.time()
            self.last_backup_end.set(finished)
            self.last_backup_duration.set(finished - started)
            if ok:
                self.last_backup_success.set(SUCCESS_OK)
                self.successful_backups.inc()
            else:
                self.last_backup_success.set(SUCCESS_FAILED)
                self.failed_backups.inc()
            log.debug("backup_metrics_updated", success=ok, duration=round(finished - started, 3))

    def render(self) -> bytes:
        """Return the Prometheus text exposition of this registry."""
        return generate_latest(self.registry)
