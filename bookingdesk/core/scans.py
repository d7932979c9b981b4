"""Shared plumbing for the periodic per-tenant scans."""

import logging
from dataclasses import dataclass, field
from uuid import UUID

from bookingdesk.core.store import StoreFactory
from bookingdesk.models.database import Tenant


@dataclass
class ScanSummary:
    """What one pass of a scan did."""

    scan: str
    processed: int = 0
    changed: int = 0
    failures: int = 0
    failed_units: list[str] = field(default_factory=list)

    def record_failure(self, unit: UUID | str) -> None:
        self.failures += 1
        self.failed_units.append(str(unit))

    def log(self, logger: logging.Logger) -> None:
        """INFO when the pass changed or failed something, DEBUG otherwise."""
        level = logging.INFO if (self.changed or self.failures) else logging.DEBUG
        logger.log(
            level,
            f"{self.scan} scan: processed={self.processed} "
            f"changed={self.changed} failures={self.failures}",
        )

    def to_dict(self) -> dict:
        return {
            "scan": self.scan,
            "processed": self.processed,
            "changed": self.changed,
            "failures": self.failures,
        }


async def load_tenants(store_factory: StoreFactory) -> list[Tenant]:
    """Fetch all tenants in a short-lived unit of work."""
    async with store_factory() as store:
        return await store.list_tenants()
