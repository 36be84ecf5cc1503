"""
Error taxonomy for the unlock engine.

None of these are fatal to the process. The web layer maps them to
status codes and toasts:
- RemoteUnavailable -> 503, optimistic change rolled back
- AuthError -> form re-rendered with the reason, guest set untouched
- PartialMergeFailure -> warning toast with a retry action
- ToggleInProgress -> 409, nothing changed
"""


class ReefdexError(Exception):
    """Base class for all Reefdex errors."""


class RemoteUnavailable(ReefdexError):
    """A backend call failed; the caller must treat it as not applied."""

    def __init__(self, operation: str, species_id: str = None, status_code: int = None, detail: str = ""):
        self.operation = operation
        self.species_id = species_id
        self.status_code = status_code
        self.detail = detail
        parts = [f"{operation} failed"]
        if species_id is not None:
            parts.append(f"species={species_id}")
        if status_code is not None:
            parts.append(f"status={status_code}")
        if detail:
            parts.append(detail)
        super().__init__(" ".join(parts))


class AuthError(ReefdexError):
    """Login or signup failed. No identity transition occurs."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class PartialMergeFailure(ReefdexError):
    """Some guest unlocks could not be added to the account during merge.

    The succeeded adds are kept; `failed` holds the ids left as residue.
    """

    def __init__(self, failed: frozenset, result=None):
        self.failed = frozenset(failed)
        self.result = result
        super().__init__(f"{len(self.failed)} unlock(s) could not be saved to your account")


class ToggleInProgress(ReefdexError):
    """The same species is already being toggled for this session."""

    def __init__(self, species_id: str):
        self.species_id = species_id
        super().__init__(f"toggle already in progress for species={species_id}")


class CatalogError(ReefdexError):
    """The species catalog could not be read or contains malformed rows."""
