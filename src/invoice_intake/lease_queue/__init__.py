"""
Lease Queue (intake dedup store).

Per-source-item leases with TTLs, attempt counts and dead-letter state,
giving exactly-once processing across pollers.
"""

from .queue import LeaseQueue

__all__ = ["LeaseQueue"]
