"""
Per-session unlock state.

The store is the single view of "which species are unlocked" and the only
component that mutates it. Its observable set is:
- the guest set while no identity is present
- a mirror of the account's remote set once an identity is present

The two never blend except through the one-time merge performed by
set_identity() when an identity is first acquired. The guest set is consumed
by that merge: a later logout starts from an empty guest set and a later
login does not replay it.

Toggles with an identity are optimistic: the mirror flips first, the backend
call follows, and a failed call rolls the flip back and re-raises
RemoteUnavailable.
"""

import asyncio
import logging

from core.errors import PartialMergeFailure, RemoteUnavailable, ToggleInProgress
from core.event_recorder import (
    LOGOUT, MERGE, UNLOCK_ROLLBACK, UNLOCK_TOGGLE, EventRecorder, get_event_recorder,
)
from core.identity import Identity
from core.reconciler import MergeResult, Reconciler
from core.remote_gateway import RemoteUnlockGateway

logger = logging.getLogger(__name__)


class UnlockStore:
    def __init__(self, gateway: RemoteUnlockGateway, reconciler: Reconciler = None,
                 recorder: EventRecorder = None):
        self._gateway = gateway
        self._reconciler = reconciler or Reconciler(gateway)
        self._recorder = recorder
        self._identity: Identity | None = None
        self._unlocked: set[str] = set()
        self._residue: frozenset[str] = frozenset()
        self._pending: set[str] = set()
        self._transition = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def is_guest(self) -> bool:
        return self._identity is None

    @property
    def residue(self) -> frozenset[str]:
        """Guest unlocks that could not be added to the account during merge."""
        return self._residue

    def is_unlocked(self, species_id) -> bool:
        return str(species_id) in self._unlocked

    def is_pending(self, species_id) -> bool:
        return str(species_id) in self._pending

    def snapshot(self) -> frozenset[str]:
        return frozenset(self._unlocked)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def toggle(self, species_id) -> bool:
        """
        Flip membership of a species.

        Returns:
            True if the species is unlocked after the call.

        Raises:
            ToggleInProgress: the same species is already being toggled
            RemoteUnavailable: the backend call failed; the flip was undone
        """
        species_id = str(species_id)
        if species_id in self._pending:
            raise ToggleInProgress(species_id)

        # Marked before any await so a duplicate is refused even while this
        # call is still waiting on a login/logout
        self._pending.add(species_id)
        try:
            if self._transition.locked():
                # Land on the state the login/logout in flight produces
                async with self._transition:
                    pass
            return await self._flip(species_id)
        finally:
            self._pending.discard(species_id)

    async def _flip(self, species_id: str) -> bool:
        identity = self._identity
        unlock = species_id not in self._unlocked

        if identity is None:
            self._apply(species_id, unlock)
            await self._record(UNLOCK_TOGGLE, species_id=species_id, unlocked=unlock, guest=True)
            return unlock

        self._apply(species_id, unlock)
        try:
            if unlock:
                await self._gateway.add_remote_unlock(identity, species_id)
            else:
                await self._gateway.remove_remote_unlock(identity, species_id)
        except RemoteUnavailable as e:
            # Only roll back if the mirror still belongs to the same account
            if self._identity is identity:
                self._apply(species_id, not unlock)
            logger.warning(f"Toggle rolled back for user={identity.id} species={species_id}: {e}")
            await self._record(UNLOCK_ROLLBACK, species_id=species_id, unlocked=not unlock,
                               user_id=identity.id, error=str(e))
            raise

        if self._identity is identity:
            # An explicit toggle settles any leftover merge id
            self._residue = self._residue - {species_id}
        await self._record(UNLOCK_TOGGLE, species_id=species_id, unlocked=unlock,
                           guest=False, user_id=identity.id)
        return unlock

    async def set_identity(self, identity: Identity | None) -> MergeResult | None:
        """
        Move the store to a new identity (login, signup) or to none (logout).

        Acquiring an identity merges the guest set into the account and adopts
        the merged set. If the account's unlocks cannot be listed the store is
        left exactly as it was (still a guest) and RemoteUnavailable
        propagates.

        Raises:
            RemoteUnavailable: the remote set could not be read
            PartialMergeFailure: some adds failed; raised after the new state
                (with the failed ids kept as residue) has been adopted
        """
        async with self._transition:
            current = self._identity
            if identity is not None and current is not None and identity.id == current.id:
                # Same account, possibly a refreshed token
                self._identity = identity
                return None

            if current is not None:
                await self._clear(reason="logout" if identity is None else "switch")
            if identity is None:
                return None

            guest = set(self._unlocked)
            result = await self._reconciler.merge(guest, identity)

            self._identity = identity
            self._unlocked = set(result.merged)
            self._residue = result.failed
            await self._record(MERGE, user_id=identity.id, guest=len(guest),
                               remote=len(result.remote_before), added=sorted(result.added),
                               failed=sorted(result.failed))

        if not result.ok:
            raise PartialMergeFailure(result.failed, result)
        return result

    async def retry_merge(self) -> MergeResult:
        """
        Retry adding the residue left by a partial merge.

        Raises:
            RemoteUnavailable: the remote set could not be read; residue kept
            PartialMergeFailure: some ids still failed; they stay as residue
        """
        async with self._transition:
            identity = self._identity
            if identity is None or not self._residue:
                return MergeResult(remote_before=frozenset(self._unlocked))

            residue = set(self._residue)
            result = await self._reconciler.merge(residue, identity)
            self._unlocked = set(result.merged)
            self._residue = result.failed
            await self._record(MERGE, user_id=identity.id, retry=True, guest=len(residue),
                               remote=len(result.remote_before), added=sorted(result.added),
                               failed=sorted(result.failed))

        if not result.ok:
            raise PartialMergeFailure(result.failed, result)
        return result

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _apply(self, species_id: str, unlock: bool) -> None:
        if unlock:
            self._unlocked.add(species_id)
        else:
            self._unlocked.discard(species_id)

    async def _clear(self, reason: str) -> None:
        user_id = self._identity.id if self._identity else None
        self._identity = None
        self._unlocked = set()
        self._residue = frozenset()
        logger.info(f"Store reset to empty guest set ({reason}) user={user_id}")
        await self._record(LOGOUT, user_id=user_id, reason=reason)

    async def _record(self, event_type: str, **payload) -> None:
        # fsync off the event loop
        recorder = self._recorder or get_event_recorder()
        await asyncio.to_thread(recorder.record, event_type, payload)
