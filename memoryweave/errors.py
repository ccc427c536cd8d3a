"""
Shared error types for the memory engine.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class DimensionMismatchError(ValueError):
    """Raised when two vectors that must share a dimension do not."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"vector dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class EmptyInputError(ValueError):
    """Raised when an aggregate is requested over no inputs."""


class EmbeddingProviderError(RuntimeError):
    """Raised when the embedding provider is unavailable."""


class LanguageModelError(RuntimeError):
    """Raised when the language-model provider fails or returns nothing usable."""


class MemoryNotFoundError(Exception):
    """Raised when a memory does not exist within the caller's tenant."""

    def __init__(self, memory_id: str):
        super().__init__(f"Memory not found: {memory_id}")
        self.memory_id = memory_id


class ContextNotFoundError(Exception):
    """Raised when a persisted context does not exist or has expired."""


class AccessNotFoundError(Exception):
    """Raised when an access record does not exist within the caller's tenant."""


class MemoryRelationshipNotFoundError(Exception):
    """Raised when a relationship does not exist within the caller's tenant."""
