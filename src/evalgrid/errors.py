from __future__ import annotations


class EvalGridError(Exception):
    """Base class for all evalgrid errors."""


class ConfigError(EvalGridError):
    """Invalid or missing configuration, raised before any provider call."""


class HttpError(EvalGridError):
    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


class ProtocolError(EvalGridError):
    """Upstream payload could not be parsed, or the stream ended early."""


class PipelineError(EvalGridError):
    pass


class RunAborted(EvalGridError):
    def __init__(self, message: str = "Run aborted") -> None:
        super().__init__(message)


class ProviderError(EvalGridError):
    """The provider reported an error inside an otherwise successful stream."""


class UnsupportedContentError(EvalGridError):
    """The prompt attaches a file type the provider does not accept."""
