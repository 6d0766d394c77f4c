"""Error taxonomy shared by the match orchestrator and its gateways."""

from __future__ import annotations


class MatchmakingError(Exception):
    """Base class for errors surfaced to HTTP callers."""


class ValidationError(MatchmakingError):
    """Missing or empty identity / interest text. Never retried."""


class EmptyInputError(ValidationError):
    """Text handed to the embedding provider was blank."""


class DependencyError(MatchmakingError):
    """An external collaborator (embedding provider, vector index) failed."""


class DependencyTransientError(DependencyError):
    """A single failed call that is worth retrying."""


class DependencyExhaustedError(DependencyError):
    """The retry budget for a dependency ran out."""

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class EmbeddingUnavailableError(DependencyExhaustedError):
    pass


class IndexUnavailableError(DependencyExhaustedError):
    pass
