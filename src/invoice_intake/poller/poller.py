"""
Poller: discover -> claim -> fetch -> start -> process.

One poll of a connection:
1. list waiting items (a listing failure is a failed poll)
2. drop items already covered by a lease (claim_batch), then cap the
   rest at claim_batch_size
3. acquire a lease per item; only `polled` leases go on
4. fetch the item (fetch failure marks the lease failed)
5. polled -> processing (the loser of a race skips the item)
6. run the pipeline; it releases the lease on success

Items are isolated from each other: one bad item never stops the batch.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..config import Config
from ..lease_queue import LeaseQueue
from ..pipeline import PipelineResult, ProcessingPipeline
from ..state_store import ConnectionRecord, LeaseStatus, StateStore
from .sources import MailboxSource, create_source

logger = logging.getLogger(__name__)


@dataclass
class PollResult:
    """Outcome of polling one connection."""

    connection_id: int
    tenant_id: int
    discovered: int = 0
    claimed: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None
    results: list[PipelineResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "connection_id": self.connection_id,
            "tenant_id": self.tenant_id,
            "discovered": self.discovered,
            "claimed": self.claimed,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "error": self.error,
        }


class Poller:
    """Polls connections and hands claimed items to the pipeline."""

    def __init__(
        self,
        state_store: StateStore,
        config: Config,
        pipeline: ProcessingPipeline,
        lease_queue: Optional[LeaseQueue] = None,
        source_factory: Callable[[ConnectionRecord], MailboxSource] = create_source,
    ):
        self.store = state_store
        self.config = config
        self.pipeline = pipeline
        self.lease_queue = lease_queue or LeaseQueue(state_store, config)
        self.source_factory = source_factory

    def poll_connection(
        self, connection: ConnectionRecord, now: Optional[datetime] = None
    ) -> PollResult:
        """Poll one connection and process what it yields."""
        result = PollResult(connection_id=connection.id, tenant_id=connection.tenant_id)

        try:
            source = self.source_factory(connection)
            item_ids = source.list_item_ids()
        except Exception as e:
            result.error = str(e) or type(e).__name__
            self.store.record_poll_failure(connection.id, result.error, now=now)
            logger.error(f"Poll of connection {connection.id} ({connection.name}) failed: {e}")
            return result

        result.discovered = len(item_ids)
        claimable = self.lease_queue.claim_batch(connection.id, item_ids, now=now)
        claimable = claimable[: self.config.lease.claim_batch_size]

        for item_id in claimable:
            try:
                self._process_item(connection, source, item_id, result, now)
            except Exception:
                result.failed += 1
                logger.exception(f"Connection {connection.id}: item {item_id} failed unexpectedly")

        self.store.record_poll_success(connection.id, now=now)
        self.store.record_tenant_poll_success(connection.tenant_id, now=now)

        logger.info(
            f"Polled connection {connection.id}: {result.discovered} discovered, "
            f"{result.claimed} claimed, {result.processed} processed, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    def _process_item(
        self,
        connection: ConnectionRecord,
        source: MailboxSource,
        item_id: str,
        result: PollResult,
        now: Optional[datetime],
    ) -> None:
        lease = self.lease_queue.acquire(connection.id, item_id, now=now)
        if lease.status != LeaseStatus.POLLED:
            result.skipped += 1
            return
        result.claimed += 1

        try:
            document = source.fetch(item_id)
        except Exception as e:
            self.lease_queue.mark_failed(lease.id, f"fetch failed: {e}", now=now)
            result.failed += 1
            return

        if not self.lease_queue.start_processing(lease.id, now=now):
            result.skipped += 1
            return

        run = self.pipeline.run(connection.tenant_id, document, lease_id=lease.id)
        result.results.append(run)
        if run.ok:
            result.processed += 1
        else:
            result.failed += 1

    def poll_tenant(self, tenant_id: int, now: Optional[datetime] = None) -> list[PollResult]:
        """Poll every active connection of a tenant."""
        return [
            self.poll_connection(connection, now=now)
            for connection in self.store.list_connections(tenant_id, active_only=True)
        ]

    def poll_all(self, now: Optional[datetime] = None) -> list[PollResult]:
        """Poll every active connection of every active tenant."""
        results = []
        for tenant in self.store.list_tenants_with_active_connections():
            results.extend(self.poll_tenant(tenant.id, now=now))
        return results
