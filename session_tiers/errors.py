"""
Error types for the session tiers core.

Transient store failures (HotStoreUnavailable, ColdStoreUnavailable) and
SerializationFault are raised. RaceDetected and the violation types are
observational: they are built as values, logged and counted, never raised by
the scheduled jobs.
"""


class SessionTiersError(RuntimeError):
    """Base class for all session tiers errors."""


class HotStoreUnavailable(SessionTiersError):
    """Raised when the hot store (Redis) cannot be reached or a command fails."""


class ColdStoreUnavailable(SessionTiersError):
    """Raised when a cold store transaction fails."""


class SerializationFault(SessionTiersError):
    """Raised when a stored message payload cannot be decoded."""


class RaceDetected(SessionTiersError):
    """Optimistic re-check found activity newer than the idle threshold."""

    def __init__(self, conversation_id: str, score: float, threshold: float):
        super().__init__(f"conversation {conversation_id} became active during archival scan")
        self.conversation_id = conversation_id
        self.score = score
        self.threshold = threshold


class DualExistenceViolation(SessionTiersError):
    """A conversation id exists in both the heartbeat index and the cold store."""

    def __init__(self, conversation_id: str):
        super().__init__(f"conversation {conversation_id} exists in both hot and cold tiers")
        self.conversation_id = conversation_id


class OrphanViolation(SessionTiersError):
    """A heartbeat entry whose message log or metadata is missing."""

    def __init__(self, conversation_id: str, missing: str):
        super().__init__(f"conversation {conversation_id} has a heartbeat but no {missing}")
        self.conversation_id = conversation_id
        self.missing = missing


class BacklogThresholdExceeded(SessionTiersError):
    """The dead-letter backlog is non-empty."""

    def __init__(self, size: int, sample: str | None = None):
        super().__init__(f"dead-letter backlog holds {size} entries")
        self.size = size
        self.sample = sample
