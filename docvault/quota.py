"""Per-owner storage quota checks.

The check reads current usage and decides; nothing spans the later write, so
it is a soft limit across processes (see the ingestion pipeline for the
in-process serialization).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import StorageLimitExceeded
from .repository import DocumentRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageUsage:
    limit: int
    used: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


class StorageAccountant:
    """Compares an owner's stored bytes against their limit.

    Args:
        repository: Metadata store for the current session
        default_limit_bytes: Limit for owners without an override row
    """

    def __init__(self, repository: DocumentRepository, default_limit_bytes: int):
        self.repository = repository
        self.default_limit_bytes = default_limit_bytes

    async def limit_for(self, owner_id: str) -> int:
        override = await self.repository.owner_limit(owner_id)
        return self.default_limit_bytes if override is None else int(override)

    async def usage(self, owner_id: str) -> StorageUsage:
        limit = await self.limit_for(owner_id)
        used = await self.repository.sum_size_by_owner(owner_id)
        return StorageUsage(limit=limit, used=used)

    async def assert_within_quota(self, owner_id: str, candidate_bytes: int) -> None:
        """Raise StorageLimitExceeded if ``candidate_bytes`` would not fit."""
        usage = await self.usage(owner_id)
        if usage.used + candidate_bytes > usage.limit:
            logger.info(
                f"Owner {owner_id} over quota: used={usage.used} candidate={candidate_bytes} limit={usage.limit}"
            )
            raise StorageLimitExceeded(usage.limit)
