"""
Per-run lookup cache.

Holds vendor resolution results (ID and default category by normalized
name) for the duration of one pipeline invocation. A fresh RunCache is
created for every run and dropped when the run ends; nothing is shared
between runs or tenants.
"""

import logging
from dataclasses import dataclass

from .state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class CachedVendor:
    vendor_id: int
    default_category: str | None = None


class RunCache:
    """Vendor lookups for a single run, misses included."""

    def __init__(self, store: StateStore):
        self.store = store
        self._vendors: dict[tuple[int, str], CachedVendor | None] = {}
        self.hits = 0
        self.misses = 0

    def get_vendor(self, tenant_id: int, normalized_name: str) -> CachedVendor | None:
        """Resolve a vendor by normalized name, hitting the store at most once."""
        key = (tenant_id, normalized_name)
        if key in self._vendors:
            self.hits += 1
            return self._vendors[key]

        self.misses += 1
        record = self.store.find_vendor(tenant_id, normalized_name)
        cached = CachedVendor(record.id, record.default_category) if record else None
        self._vendors[key] = cached
        return cached

    def remember_vendor(
        self,
        tenant_id: int,
        normalized_name: str,
        vendor_id: int,
        default_category: str | None = None,
    ) -> None:
        """Record a vendor created or resolved later in the run."""
        self._vendors[(tenant_id, normalized_name)] = CachedVendor(vendor_id, default_category)

    def clear(self) -> None:
        self._vendors.clear()
