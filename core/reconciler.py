"""
Guest-to-account reconciliation.

Runs when a session acquires an identity (login or signup). The guest set
is folded into the account's remote set:

    R       = list_remote_unlocks(identity)
    to_add  = guest - R
    merged  = R | {ids in to_add whose add succeeded}

The merge only ever adds. Ids already on the account are never removed and
never re-sent, so running it again with the merged set as R issues no calls.
Adds are dispatched concurrently (bounded by MERGE_CONCURRENCY); the result
is only produced once every add has settled.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from core import config
from core.errors import RemoteUnavailable
from core.identity import Identity
from core.remote_gateway import RemoteUnlockGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    remote_before: frozenset[str]
    added: frozenset[str] = field(default_factory=frozenset)
    failed: frozenset[str] = field(default_factory=frozenset)

    @property
    def merged(self) -> frozenset[str]:
        return self.remote_before | self.added

    @property
    def ok(self) -> bool:
        return not self.failed


class Reconciler:
    def __init__(self, gateway: RemoteUnlockGateway, concurrency: int = None):
        self.gateway = gateway
        self.concurrency = concurrency or config.MERGE_CONCURRENCY

    async def merge(self, guest: set[str], identity: Identity) -> MergeResult:
        """
        Merge a guest set into the account's remote set.

        Raises:
            RemoteUnavailable: if the remote set cannot be listed. Nothing
                has been written in that case.
        """
        remote = frozenset(await self.gateway.list_remote_unlocks(identity))
        to_add = set(guest) - remote
        if not to_add:
            logger.info(f"Merge for user={identity.id}: nothing to add ({len(remote)} remote)")
            return MergeResult(remote_before=remote)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def add_one(species_id: str) -> tuple[str, bool]:
            async with semaphore:
                try:
                    await self.gateway.add_remote_unlock(identity, species_id)
                    return species_id, True
                except RemoteUnavailable as e:
                    logger.warning(f"Merge add failed for user={identity.id}: {e}")
                    return species_id, False

        outcomes = await asyncio.gather(*(add_one(sid) for sid in sorted(to_add)))
        added = frozenset(sid for sid, ok in outcomes if ok)
        failed = frozenset(sid for sid, ok in outcomes if not ok)

        logger.info(
            f"Merge for user={identity.id}: {len(added)} added, {len(failed)} failed, "
            f"{len(remote)} already remote"
        )
        return MergeResult(remote_before=remote, added=added, failed=failed)
