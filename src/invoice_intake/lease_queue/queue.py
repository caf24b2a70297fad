"""
Lease Queue Service.

Lifecycle of a source item:
- claimed on first sight: polled, attempt 1, expires in lease_minutes
- handed to the pipeline: processing (exactly one worker wins)
- success: processed (terminal)
- non-fatal error: failed, re-claimable on the next poll
- attempt budget used up: dead_letter, until an operator resets it

Promotion to dead_letter on expiry is the health monitor's job; this
service never promotes in mark_failed.
"""

import logging
from collections.abc import Iterable
from datetime import datetime

from ..config import Config
from ..state_store import LeaseRecord, LeaseStatus, StateStore, utc_now

logger = logging.getLogger(__name__)


class LeaseQueue:
    """
    Service for claiming and releasing intake leases.

    All state lives in the state store; the service itself holds only
    configuration, so any number of pollers may share one database.
    """

    def __init__(self, state_store: StateStore, config: Config):
        """
        Initialize the lease queue.

        Args:
            state_store: State store for lease persistence
            config: Application configuration
        """
        self.store = state_store
        self.config = config

    @property
    def lease_minutes(self) -> int:
        return self.config.lease.lease_minutes

    def claim_batch(
        self,
        connection_id: int,
        discovered_item_ids: Iterable[str],
        now: datetime | None = None,
    ) -> list[str]:
        """
        Filter freshly discovered items down to the claimable ones.

        Items covered by a processed lease or by an unexpired polled/processing
        lease are dropped, and so are dead-lettered items, which only an
        operator reset brings back. Failed items are returned as claimable.
        Discovery order is kept and duplicates are collapsed.
        """
        item_ids = list(dict.fromkeys(discovered_item_ids))
        existing = self.store.get_leases_for_items(connection_id, item_ids)
        current = now or utc_now()

        claimable = [
            item_id
            for item_id in item_ids
            if item_id not in existing or existing[item_id].is_claimable(current)
        ]

        skipped = len(item_ids) - len(claimable)
        if skipped:
            logger.debug(
                f"Connection {connection_id}: {skipped} of {len(item_ids)} items already leased"
            )
        return claimable

    def acquire(
        self,
        connection_id: int,
        item_id: str,
        now: datetime | None = None,
    ) -> LeaseRecord:
        """
        Upsert the lease for one item.

        Returns the lease as stored afterwards. The caller may only proceed
        when the returned lease is `polled`; anything else means the item is
        owned elsewhere, finished, or dead-lettered.
        """
        connection = self.store.get_connection(connection_id)
        if connection is None:
            raise ValueError(f"Unknown connection {connection_id}")

        before = self.store.get_lease_by_item(connection_id, item_id)
        lease = self.store.acquire_lease(
            tenant_id=connection.tenant_id,
            connection_id=connection_id,
            source_item_id=item_id,
            lease_minutes=self.lease_minutes,
            max_attempts=self.config.lease.max_attempts,
            now=now,
        )

        if before is None:
            logger.info(f"Claimed {item_id} on connection {connection_id} (lease #{lease.id})")
        elif lease.attempt_count > before.attempt_count:
            logger.info(
                f"Re-claimed {item_id} on connection {connection_id} "
                f"(lease #{lease.id}, attempt {lease.attempt_count}/{lease.max_attempts})"
            )
        elif lease.status == LeaseStatus.DEAD_LETTER and before.status != LeaseStatus.DEAD_LETTER:
            logger.warning(
                f"Lease #{lease.id} for {item_id} dead-lettered: attempt budget exhausted"
            )
        return lease

    def start_processing(self, lease_id: int, now: datetime | None = None) -> bool:
        """
        Hand a polled lease to the pipeline (polled -> processing).

        Returns False when another worker got there first or the lease
        expired; the caller must then skip the item.
        """
        started = self.store.start_lease_processing(lease_id, self.lease_minutes, now=now)
        if not started:
            logger.debug(f"Lease #{lease_id} not startable (already taken or expired)")
        return started

    def mark_processed(self, lease_id: int, now: datetime | None = None) -> bool:
        """Terminal success."""
        updated = self.store.mark_lease_processed(lease_id, now=now)
        if updated:
            logger.debug(f"Lease #{lease_id} processed")
        return updated

    def mark_failed(self, lease_id: int, error: str, now: datetime | None = None) -> bool:
        """Non-fatal failure: eligible for re-claim on the next poll."""
        updated = self.store.mark_lease_failed(lease_id, error, now=now)
        if updated:
            logger.warning(f"Lease #{lease_id} failed: {error}")
        return updated

    def reset_for_retry(
        self,
        lease_ids: list[int] | None = None,
        tenant_id: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """
        Operator action: put failed/dead-lettered leases back in play.

        Exactly one of `lease_ids` or `tenant_id` must be given. By IDs, both
        failed and dead_letter rows are reset and more than
        `reset_batch_limit` IDs are rejected. By tenant, up to
        `reset_batch_limit` of the oldest dead_letter rows are reset.

        Returns:
            Number of leases reset
        """
        limit = self.config.lease.reset_batch_limit

        if (lease_ids is None) == (tenant_id is None):
            raise ValueError("Provide either lease_ids or tenant_id")

        if lease_ids is not None:
            if not lease_ids:
                raise ValueError("lease_ids must not be empty")
            if len(lease_ids) > limit:
                raise ValueError(f"Maximum {limit} leases per retry batch")
            count = self.store.reset_leases(
                list(dict.fromkeys(lease_ids)), self.lease_minutes, now=now
            )
            logger.info(f"Reset {count} of {len(lease_ids)} requested leases for retry")
            return count

        count = self.store.reset_tenant_dead_letters(
            tenant_id, limit, self.lease_minutes, now=now
        )
        logger.info(f"Reset {count} dead-lettered leases for tenant {tenant_id}")
        return count

    def list_dead_letter(self, tenant_id: int | None = None, limit: int = 100) -> list[LeaseRecord]:
        """Dead-lettered leases, most recently updated first."""
        return self.store.list_leases(
            tenant_id=tenant_id, status=LeaseStatus.DEAD_LETTER, limit=limit
        )
