"""
Health monitor sweep.

Checks, in order:
1. Orphaned leases: expired polled/processing leases become failed, or
   dead_letter once their attempt budget is used up. Failed leases with
   an exhausted budget are promoted to dead_letter as well.
2. Per-tenant staleness of the last successful poll (healthy / degraded
   / down). Status is written and alerted only on transition.
3. Dead-letter accumulation per tenant (repeats every sweep).
4. Connections with too many consecutive poll failures.
5. Global error rate of pipeline runs in the last window.

Alerts are appended to the alert log first and only then forwarded, so a
failing notification channel never loses an alert.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from ..notify import NullNotifier, build_health_alert_message
from ..state_store import (
    AlertRecord,
    AlertSeverity,
    AlertType,
    LeaseStatus,
    PipelineStatus,
    TenantRecord,
    parse_iso,
    to_iso,
    utc_now,
)

if TYPE_CHECKING:
    from ..config import Config
    from ..notify import Notifier
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

EXHAUSTED_ERROR = "exceeded max attempts"
TIMED_OUT_ERROR = "timed out waiting for processing"


@dataclass
class _PendingAlert:
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    tenant_id: int | None = None
    connection_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SweepReport:
    """What one sweep saw and did."""

    checks: dict[str, int]
    alerts: list[AlertRecord] = field(default_factory=list)
    notification_sent: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "checks": self.checks,
            "alerts_generated": len(self.alerts),
            "alerts": [a.to_dict() for a in self.alerts],
            "notification_sent": self.notification_sent,
        }


class HealthMonitor:
    """
    Runs health sweeps and serves operator health actions.

    Touches lease, tenant, connection and alert state only; never
    business data.
    """

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        notifier: Notifier | None = None,
    ):
        """
        Initialize the monitor.

        Args:
            state_store: State store
            config: Application configuration
            notifier: Channel for forwarding warning/critical alerts
        """
        self.store = state_store
        self.config = config
        self.notifier = notifier or NullNotifier()

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run every check once and record the resulting alerts."""
        current = now or utc_now()
        checks = {
            "tenants_checked": 0,
            "healthy": 0,
            "degraded": 0,
            "down": 0,
            "orphaned_reset": 0,
            "dead_letter_promoted": 0,
            "dead_letter_total": 0,
            "failing_connections": 0,
        }
        pending: list[_PendingAlert] = []

        self._reclaim_orphans(current, checks, pending)
        self._check_tenants(current, checks, pending)
        self._check_connections(checks, pending)
        self._check_error_rate(current, pending)

        alerts = self._record_alerts(pending, current)
        report = SweepReport(checks=checks, alerts=alerts)
        report.notification_sent = self._forward(alerts, checks)

        logger.info(
            f"Health sweep: {checks['tenants_checked']} tenants "
            f"({checks['healthy']} healthy, {checks['degraded']} degraded, "
            f"{checks['down']} down), {checks['orphaned_reset']} orphans reset, "
            f"{checks['dead_letter_promoted']} dead-lettered, {len(alerts)} alerts"
        )
        return report

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _reclaim_orphans(
        self, now: datetime, checks: dict[str, int], pending: list[_PendingAlert]
    ) -> None:
        orphans = self.store.list_expired_leases(now)
        for lease in orphans:
            if lease.is_exhausted:
                if self.store.reclaim_lease(lease.id, LeaseStatus.DEAD_LETTER, EXHAUSTED_ERROR, now):
                    checks["dead_letter_promoted"] += 1
                    logger.warning(
                        f"Lease #{lease.id} ({lease.source_item_id}) dead-lettered: {EXHAUSTED_ERROR}"
                    )
            elif self.store.reclaim_lease(lease.id, LeaseStatus.FAILED, TIMED_OUT_ERROR, now):
                checks["orphaned_reset"] += 1
                logger.info(f"Lease #{lease.id} ({lease.source_item_id}) reset: {TIMED_OUT_ERROR}")

        promoted = self.store.promote_exhausted_failed_leases(EXHAUSTED_ERROR, now)
        if promoted:
            logger.warning(f"{promoted} failed leases dead-lettered: {EXHAUSTED_ERROR}")
        checks["dead_letter_promoted"] += promoted

        if checks["orphaned_reset"] or checks["dead_letter_promoted"]:
            pending.append(
                _PendingAlert(
                    AlertType.ORPHANED_EMAILS,
                    AlertSeverity.WARNING,
                    f"{checks['orphaned_reset']} orphaned item(s) reset for retry, "
                    f"{checks['dead_letter_promoted']} promoted to dead letter",
                    details={
                        "orphaned_count": len(orphans),
                        "reset": checks["orphaned_reset"],
                        "dead_lettered": checks["dead_letter_promoted"],
                    },
                )
            )

    def _classify_staleness(self, minutes_since_poll: float) -> PipelineStatus:
        health = self.config.health
        if minutes_since_poll > health.down_after_minutes:
            return PipelineStatus.DOWN
        if minutes_since_poll > health.degraded_after_minutes:
            return PipelineStatus.DEGRADED
        return PipelineStatus.HEALTHY

    def _check_tenants(
        self, now: datetime, checks: dict[str, int], pending: list[_PendingAlert]
    ) -> None:
        dead_letters = self.store.count_leases_by_tenant([LeaseStatus.DEAD_LETTER])
        threshold = self.config.health.dead_letter_threshold

        for tenant in self.store.list_tenants_with_active_connections():
            checks["tenants_checked"] += 1
            minutes = _minutes_since(tenant.last_successful_poll, now)
            new_status = self._classify_staleness(minutes)
            pending.extend(self._transition_alerts(tenant, new_status, minutes))

            if self.store.update_tenant_pipeline_status(tenant.id, new_status, now):
                logger.info(
                    f"Tenant {tenant.id} pipeline {tenant.pipeline_status.value} -> {new_status.value}"
                )

            dl_count = dead_letters.get(tenant.id, 0)
            checks["dead_letter_total"] += dl_count
            if dl_count > threshold:
                pending.append(
                    _PendingAlert(
                        AlertType.DEAD_LETTER_THRESHOLD,
                        AlertSeverity.WARNING,
                        f"{tenant.name}: {dl_count} dead letter items awaiting review",
                        tenant_id=tenant.id,
                        details={"dead_letter_count": dl_count},
                    )
                )

            checks[new_status.value] += 1

    def _transition_alerts(
        self, tenant: TenantRecord, new_status: PipelineStatus, minutes: float
    ) -> list[_PendingAlert]:
        previous = tenant.pipeline_status
        since = "ever" if minutes == float("inf") else f"{round(minutes)} minutes"
        details = {"last_poll": tenant.last_successful_poll, "previous_status": previous.value}

        if new_status == PipelineStatus.DOWN and previous != PipelineStatus.DOWN:
            return [
                _PendingAlert(
                    AlertType.PIPELINE_DOWN,
                    AlertSeverity.CRITICAL,
                    f"{tenant.name}: No successful poll in {since}",
                    tenant_id=tenant.id,
                    details=details,
                )
            ]
        if new_status == PipelineStatus.DEGRADED and previous in (
            PipelineStatus.HEALTHY,
            PipelineStatus.UNKNOWN,
        ):
            return [
                _PendingAlert(
                    AlertType.POLL_FAILURE,
                    AlertSeverity.WARNING,
                    f"{tenant.name}: No successful poll in {since}",
                    tenant_id=tenant.id,
                    details=details,
                )
            ]
        if new_status == PipelineStatus.HEALTHY and previous in (
            PipelineStatus.DOWN,
            PipelineStatus.DEGRADED,
        ):
            return [
                _PendingAlert(
                    AlertType.PIPELINE_RECOVERED,
                    AlertSeverity.INFO,
                    f"{tenant.name}: Pipeline recovered (was {previous.value})",
                    tenant_id=tenant.id,
                    details=details,
                )
            ]
        return []

    def _check_connections(self, checks: dict[str, int], pending: list[_PendingAlert]) -> None:
        for conn in self.store.list_failing_connections(self.config.health.connection_failure_threshold):
            checks["failing_connections"] += 1
            pending.append(
                _PendingAlert(
                    AlertType.CONNECTION_EXPIRED,
                    AlertSeverity.CRITICAL,
                    f"{conn.name}: {conn.consecutive_failures} consecutive failures: "
                    f"{conn.last_poll_error or 'unknown error'}",
                    tenant_id=conn.tenant_id,
                    connection_id=conn.id,
                    details={"failures": conn.consecutive_failures},
                )
            )

    def _check_error_rate(self, now: datetime, pending: list[_PendingAlert]) -> None:
        health = self.config.health
        since = now - timedelta(minutes=health.error_rate_window_minutes)
        total, errors = self.store.count_processing_logs_since(since)
        if total <= health.error_rate_min_sample:
            return

        rate = errors / total
        if rate > health.error_rate_threshold:
            pending.append(
                _PendingAlert(
                    AlertType.HIGH_ERROR_RATE,
                    AlertSeverity.CRITICAL,
                    f"High error rate: {errors}/{total} ({round(rate * 100)}%) "
                    f"in the last {health.error_rate_window_minutes} minutes",
                    details={"total": total, "errors": errors, "rate": rate},
                )
            )

    # -------------------------------------------------------------------------
    # Alert log and forwarding
    # -------------------------------------------------------------------------

    def _record_alerts(self, pending: list[_PendingAlert], now: datetime) -> list[AlertRecord]:
        alerts = []
        for item in pending:
            alert_id = self.store.insert_alert(
                item.alert_type,
                item.severity,
                item.message,
                tenant_id=item.tenant_id,
                connection_id=item.connection_id,
                details=item.details,
                now=now,
            )
            record = self.store.get_alert(alert_id)
            if record is not None:
                alerts.append(record)
            log = logger.info if item.severity == AlertSeverity.INFO else logger.warning
            log(f"Alert [{item.severity.value}] {item.alert_type.value}: {item.message}")
        return alerts

    def _forward(self, alerts: list[AlertRecord], checks: dict[str, int]) -> bool:
        important = [a for a in alerts if a.severity != AlertSeverity.INFO]
        if not important or not self.notifier.enabled:
            return False
        try:
            payload = build_health_alert_message(important, checks)
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not build health alert message: {e}")
            return False
        return self.notifier.notify(payload)

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    def acknowledge_alert(
        self, alert_id: int, acknowledged_by: str, now: datetime | None = None
    ) -> bool:
        """Acknowledge an alert. False if it does not exist or was already acknowledged."""
        acknowledged = self.store.acknowledge_alert(alert_id, acknowledged_by, now=now)
        if acknowledged:
            logger.info(f"Alert #{alert_id} acknowledged by {acknowledged_by}")
        return acknowledged

    def get_health_snapshot(
        self, tenant_id: int | None = None, now: datetime | None = None
    ) -> dict[str, Any]:
        """
        Current per-tenant health for operators.

        Includes pipeline status, queue depth (polled + processing),
        dead-letter count, errors in the last 24 hours, connection status,
        and the most recent alerts (unacknowledged first).
        """
        current = now or utc_now()
        if tenant_id is not None:
            tenant = self.store.get_tenant(tenant_id)
            if tenant is None:
                raise ValueError(f"Unknown tenant {tenant_id}")
            tenants = [tenant]
        else:
            tenants = self.store.list_tenants(active_only=True)

        queue_depth = self.store.count_leases_by_tenant([LeaseStatus.POLLED, LeaseStatus.PROCESSING])
        dead_letters = self.store.count_leases_by_tenant([LeaseStatus.DEAD_LETTER])
        errors = self.store.count_errors_by_tenant_since(current - timedelta(hours=24))

        tenant_rows = []
        for tenant in tenants:
            connections = self.store.list_connections(tenant.id, active_only=False)
            tenant_rows.append(
                {
                    "tenant_id": tenant.id,
                    "name": tenant.name,
                    "pipeline_status": tenant.pipeline_status.value,
                    "pipeline_status_updated_at": tenant.pipeline_status_updated_at,
                    "last_successful_poll": tenant.last_successful_poll,
                    "last_successful_process": tenant.last_successful_process,
                    "queue_depth": queue_depth.get(tenant.id, 0),
                    "dead_letter_count": dead_letters.get(tenant.id, 0),
                    "errors_24h": errors.get(tenant.id, 0),
                    "connections": [
                        {
                            "connection_id": c.id,
                            "name": c.name,
                            "source_type": c.source_type,
                            "is_active": c.is_active,
                            "last_poll_at": c.last_poll_at,
                            "last_poll_status": c.last_poll_status,
                            "last_poll_error": c.last_poll_error,
                            "consecutive_failures": c.consecutive_failures,
                        }
                        for c in connections
                    ],
                }
            )

        alerts = self.store.list_recent_alerts(
            tenant_id=tenant_id, limit=self.config.health.recent_alerts_limit
        )
        return {
            "generated_at": to_iso(current),
            "tenants": tenant_rows,
            "alerts": [a.to_dict() for a in alerts],
        }


def _minutes_since(stamp: str | None, now: datetime) -> float:
    moment = parse_iso(stamp)
    if moment is None:
        return float("inf")
    return (now - moment).total_seconds() / 60
