"""
Health Monitor.

Periodic sweep over leases, connections and the audit trail: reclaims
orphaned leases, tracks per-tenant pipeline status and raises alerts.
"""

from .monitor import HealthMonitor, SweepReport

__all__ = ["HealthMonitor", "SweepReport"]
