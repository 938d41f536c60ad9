"""Error taxonomy for provider calls and pipeline runs."""

from typing import Optional

UNKNOWN_ERROR_MESSAGE = "Unknown error"


class PipelineError(Exception):
    """Base error for anything that ends a pipeline request."""


class AuthError(PipelineError):
    """Credential for the selected provider is missing or was rejected."""


class TransportError(PipelineError):
    """Network failure or non-2xx response from a provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(PipelineError):
    """Provider answered 2xx but without the expected content."""


class PipelineBusyError(PipelineError):
    """A pipeline is already running for this session."""


class PipelineCancelledError(PipelineError):
    """The request was cancelled between provider calls."""
