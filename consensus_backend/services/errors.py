"""Exceptions raised by the consensus services."""


class AiUpstreamError(Exception):
    """An embeddings / chat-completion call failed or returned an unusable payload."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class AiNotConfiguredError(AiUpstreamError):
    """No provider credentials are available for an AI call."""


class StaleConsensusWriteError(Exception):
    """A user-pair record was modified by another writer between read and update."""
