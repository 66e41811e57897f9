"""
Escapement errors.

Validation errors abort a run before any provider call is made. Provider
errors stay attached to the action that raised them. Conflict errors ask the
caller to retry later.
"""


class EscapementError(Exception):
    """Base exception for all Escapement errors."""
    pass


class ValidationError(EscapementError):
    """Invalid resource definitions (dangling reference, malformed attribute, ...)."""

    def __init__(self, message: str, key: str | None = None, file_path: str | None = None):
        self.message = message
        self.key = key
        self.file_path = file_path

        error_msg = message
        if key:
            error_msg = f"{key}: {error_msg}"
        if file_path:
            error_msg += f" (in '{file_path}')"

        super().__init__(error_msg)


class GraphError(ValidationError):
    """Dependency cycle between resources."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"cycle: {' → '.join(cycle)}")


class ConflictError(EscapementError):
    """The state is held by someone else; retry later."""
    pass


class LockHeld(ConflictError):
    """Another live owner holds the state lock."""

    def __init__(self, owner_id: str, message: str | None = None):
        self.owner_id = owner_id
        super().__init__(message or f"State is locked by '{owner_id}'")


class ProviderError(EscapementError):
    """A provider adapter call failed.

    Set ``indeterminate`` when the remote object may have been partially
    changed; the resource is then tainted and replaced on the next plan.
    """

    def __init__(
        self,
        message: str,
        indeterminate: bool = False,
        provider_id: str | None = None,
    ):
        self.indeterminate = indeterminate
        self.provider_id = provider_id
        super().__init__(message)


class DriftError(EscapementError):
    """Remote state diverged from stored state. Reported, never raised through apply."""

    def __init__(self, key: str, differences: dict | None = None, missing: bool = False):
        self.key = key
        self.differences = differences or {}
        self.missing = missing

        if missing:
            message = f"{key}: remote object no longer exists"
        else:
            message = f"{key}: drift in {', '.join(sorted(self.differences)) or 'attributes'}"
        super().__init__(message)


class StateStoreError(EscapementError):
    """State document could not be read, migrated or written."""
    pass


class StalePlanError(EscapementError):
    """State changed since the plan was generated."""
    pass


class PlanConsumedError(EscapementError):
    """A plan may only be applied once."""
    pass
