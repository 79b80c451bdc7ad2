"""Error kinds surfaced by proofmesh operations."""

from __future__ import annotations

from typing import Any, Optional


class ProofmeshError(Exception):
    """Base class for every error the core reports to callers."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class InvalidInput(ProofmeshError):
    kind = "invalid_input"


class Unauthorized(ProofmeshError):
    kind = "unauthorized"


class Forbidden(ProofmeshError):
    kind = "forbidden"


class NotFound(ProofmeshError):
    kind = "not_found"


class Conflict(ProofmeshError):
    kind = "conflict"


class RateLimited(ProofmeshError):
    """Admission control rejection or provider-side 429."""

    kind = "rate_limited"
    retryable = True

    def __init__(self, message: str = "", retry_after: Optional[float] = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.retry_after = retry_after


class DeadlineExceeded(ProofmeshError):
    kind = "timeout"
    retryable = True


class OperationCancelled(ProofmeshError):
    kind = "cancelled"


class Internal(ProofmeshError):
    kind = "internal"


class LedgerWriteError(Internal):
    """A call could not be recorded; its result must not be trusted."""


class ProviderError(ProofmeshError):
    """A single provider attempt failed."""

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        provider: str = "",
        model: str = "",
        status: Optional[int] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, provider=provider, model=model, status=status)
        self.provider = provider
        self.model = model
        self.status = status
        self.retryable = retryable
        self.retry_after = retry_after


class ProviderUnavailable(ProofmeshError):
    """Every provider in the fallback chain failed."""

    kind = "provider_unavailable"

    def __init__(self, message: str, attempts: Optional[list[ProviderError]] = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return any(a.retryable for a in self.attempts)


def is_retryable(exc: BaseException) -> bool:
    """Return True when a failed LM call may be re-attempted."""
    if isinstance(exc, ProofmeshError):
        return bool(exc.retryable)
    return False


__all__ = [
    "ProofmeshError",
    "InvalidInput",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "Conflict",
    "RateLimited",
    "DeadlineExceeded",
    "OperationCancelled",
    "Internal",
    "LedgerWriteError",
    "ProviderError",
    "ProviderUnavailable",
    "is_retryable",
]
