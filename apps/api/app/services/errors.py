from __future__ import annotations


class PolicyError(RuntimeError):
    """Workspace has no resolvable auto-send or inbox-zero policy."""


class ConsistencyError(RuntimeError):
    """Action targets a record that is already in a terminal state for it."""


class ProviderError(RuntimeError):
    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Network failure, timeout, throttling or 5xx. Safe to retry."""


class ProviderPermanentError(ProviderError):
    """Auth, permission or request failure that a retry will not fix.

    Surfaces as a "reconnect this channel" signal rather than a retry.
    """


def classify_status_code(status_code: int) -> type[ProviderError]:
    if status_code == 429 or status_code >= 500:
        return ProviderTransientError
    return ProviderPermanentError
