"""
Error taxonomy for the quiz generation pipeline.

Document-level and storage-level errors end a session (status "failed").
Model and payload errors are absorbed per chunk by the orchestrator.
Routers translate all of them into HTTP responses.
"""


# ─── Document errors ───────────────────────────────────────────────────────────

class DocumentUnreadableError(RuntimeError):
    """PDF text extraction failed or produced no usable text."""


class EmptyDocumentError(ValueError):
    """Chunking produced no usable chunk."""


NoChunksError = EmptyDocumentError


# ─── Model errors ──────────────────────────────────────────────────────────────

class ModelError(RuntimeError):
    """Base class for failures talking to the completion endpoint."""


class ModelTimeoutError(ModelError):
    pass


class ModelEmptyResponseError(ModelError):
    pass


class ModelInvalidJsonError(ModelError):
    pass


class ModelUnavailableError(ModelError):
    """Transport or API-side failure (connection, rate limit, 5xx)."""


# ─── Payload / session errors ──────────────────────────────────────────────────

class InvalidPayloadShapeError(ValueError):
    """Model output could not be normalized into a 5-proposition question."""


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


class GenerationBusyError(RuntimeError):
    """Another continue pass already holds this session."""

    def __init__(self, session_id: str):
        super().__init__(f"Generation already running for session {session_id}")
        self.session_id = session_id


class StorageError(RuntimeError):
    """The store could not be read or written."""
