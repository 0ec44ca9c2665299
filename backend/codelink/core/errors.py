"""Error taxonomy for the retrieval and linkage engine.

Only StorageUnavailable and UnknownCode ever reach a caller. An empty
result is not an error and is returned as an empty list.
"""


class CodeLinkError(Exception):
    """Base class for engine errors."""


class StorageUnavailable(CodeLinkError):
    """The code catalog store failed or timed out.

    Fatal for a request: without vocabulary data no answer is possible.
    """

    def __init__(self, operation: str, reason: str = "") -> None:
        self.operation = operation
        self.reason = reason
        message = f"Storage unavailable during {operation}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class EmbeddingUnavailable(CodeLinkError):
    """The embedding provider errored, timed out or is not configured.

    Recoverable: callers fall back to lexical-only results.
    """

    def __init__(self, reason: str = "") -> None:
        self.reason = reason or "embedding provider unavailable"
        super().__init__(self.reason)


class UnknownCode(CodeLinkError):
    """A code was looked up that is not present in the catalog."""

    def __init__(self, code: str, vocabulary: str) -> None:
        self.code = code
        self.vocabulary = vocabulary
        super().__init__(f"Unknown {vocabulary} code: {code}")
