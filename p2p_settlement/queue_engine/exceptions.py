"""
Error taxonomy for the P2P settlement queue.

Every error carries a machine-readable ``code`` alongside the message so
the HTTP layer can map it to a status code without string matching.
"""


class QueueError(Exception):
    """Base class for all queue engine errors."""

    code = "QUEUE_ERROR"

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(message)


class ValidationError(QueueError):
    """Missing or invalid fields on enqueue; raised before any state exists."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, **context):
        self.field = field
        super().__init__(message, **context)


class NotFound(QueueError):
    """Unknown queue item or match id."""

    code = "NOT_FOUND"


class InvalidTransition(QueueError):
    """Status change not permitted by the item or match state machine."""

    code = "INVALID_TRANSITION"


class InvalidState(InvalidTransition):
    """Lifecycle precondition failed (e.g. approving a non-pending match)."""

    code = "INVALID_STATE"


class PersistenceError(QueueError):
    """Durable-store write failed or timed out; nothing was committed."""

    code = "PERSISTENCE_ERROR"


class SettlementError(QueueError):
    """
    Financial side effect failed mid-sequence.

    The match and both items have been forced to ``failed`` by the time
    this is raised; the pair needs manual reconciliation.
    """

    code = "SETTLEMENT_ERROR"

    def __init__(self, message: str, match_id: str | None = None, **context):
        self.match_id = match_id
        super().__init__(message, **context)
