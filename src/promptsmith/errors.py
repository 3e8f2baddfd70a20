"""Error taxonomy shared by the chat client and the pipeline orchestrator.

Lower layers raise these; only the orchestrator turns them into user-facing
notifications.
"""

from __future__ import annotations

from typing import Optional


class PromptsmithError(Exception):
    """Base class for every error raised by promptsmith."""


class AbortError(PromptsmithError):
    """A call was cancelled through its cancellation handle."""

    def __init__(self, message: str = "Request aborted") -> None:
        super().__init__(message)


class ConfigurationError(PromptsmithError):
    """No usable (provider, model) pair could be resolved."""


class ProviderCallError(PromptsmithError):
    """Network failure or non-success response from a provider."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(PromptsmithError):
    """Structured content could not be parsed; callers degrade instead of failing."""


class ValidationError(PromptsmithError):
    """A precondition for a user action is not met (e.g. missing upstream artifact)."""


class StageConflictError(RuntimeError):
    """A stage was started while another stage is still active."""
