"""
Custom exceptions for Agent Autopilot.

Only ValidationError and StateError ever reach the caller of a store
operation. Boundary violations are not exceptions at all: they come back
as ``False`` from ``PermissionStore.validate_action`` and end up as a
blocked Execution. The remaining kinds are raised by collaborators and
absorbed by the component that calls them.
"""


class AutopilotError(Exception):
    """Base class for every error raised by Agent Autopilot."""
    pass


class ValidationError(AutopilotError):
    """
    Raised when a request is malformed and is rejected before anything is stored.

    Examples:
    - Invalid token or contract address
    - Non-positive spend amount
    - End time not after start time
    - Empty allowed-contract list
    """
    pass


class StateError(AutopilotError):
    """
    Raised on an illegal lifecycle transition.

    For instance revoking a permission that is expired or already revoked.
    """
    pass


class ProviderError(AutopilotError):
    """
    Raised when the reasoning provider is unreachable or returns a malformed reply.

    DecisionEngine catches this and falls back to the deterministic rules.
    """
    pass


class ExecutionError(AutopilotError):
    """
    Raised by an execution collaborator when a transaction cannot be carried out.

    The orchestrator records it on the Execution as status=failed.
    """
    pass


class PersistenceError(AutopilotError):
    """
    Raised by a storage driver when a read or write fails.

    Stores log it and keep their in-memory state authoritative.
    """
    pass


class LedgerInvariantError(AutopilotError):
    """
    Raised when the spend ledger is internally inconsistent.

    This signals a programming error, e.g. recording spend against a
    permission that has no tracking.
    """
    pass
