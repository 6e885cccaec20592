"""Core types for the WHOOP bridge: the stored credential, the error taxonomy,
and the tagged outcome used by best-effort aggregation.

These types are shared by the token store, the token lifecycle manager, the
authenticated fetcher and the aggregation engine.  Routers translate the
exceptions defined here into HTTP responses.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Credential
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """The single persisted OAuth credential.

    Attributes:
        access_token:  Bearer token for WHOOP API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    Epoch millis when access_token expires
                       (issue time + server-reported ``expires_in``).
        updated_at:    Epoch millis of the last write.
    """

    access_token: str
    refresh_token: str
    expires_at: int
    updated_at: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        """Build a Credential from its persisted JSON form.

        Raises:
            KeyError, TypeError, ValueError: If a field is missing, a token is not
                a non-empty string, or a timestamp is not coercible.
        """
        for key in ("access_token", "refresh_token"):
            if not isinstance(data[key], str) or not data[key]:
                raise ValueError(f"{key} must be a non-empty string")
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=int(data["expires_at"]),
            updated_at=int(data["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def expires_within(self, now_ms: int, buffer_ms: int) -> bool:
        """True if the access token expires within ``buffer_ms`` of ``now_ms``."""
        return now_ms + buffer_ms >= self.expires_at

    @property
    def expires_at_iso(self) -> str:
        return _millis_to_iso(self.expires_at)

    @property
    def updated_at_iso(self) -> str:
        return _millis_to_iso(self.updated_at)


def _millis_to_iso(millis: int) -> str:
    dt = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class WhoopError(Exception):
    """Base class for every failure the bridge core signals."""


class AuthRequired(WhoopError):
    """No usable credential; the user has to run the authorization flow again."""

    def __init__(self, message: str = "Please authorize at /auth/start") -> None:
        super().__init__(message)
        self.message = message


class NoData(WhoopError):
    """A lookup legitimately found nothing (empty listing, recovery 404)."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"No {resource} data found")
        self.resource = resource
        self.message = f"No {resource} data found"


class ApiError(WhoopError):
    """Any other upstream failure.

    Attributes:
        status:  Upstream HTTP status, or None for network failures / timeouts.
        message: Upstream error message when one was returned.
    """

    def __init__(self, status: int | None, message: str) -> None:
        super().__init__(f"WHOOP API error ({status}): {message}" if status else message)
        self.status = status
        self.message = message


# ---------------------------------------------------------------------------
# Tagged outcome for best-effort sub-fetches
# ---------------------------------------------------------------------------


class OutcomeKind(str, Enum):
    OK = "ok"
    MISSING = "missing"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    """Result of one fault-tolerant sub-fetch inside an aggregate.

    Attributes:
        kind:   ok, missing (no data upstream) or failed (ApiError).
        value:  The fetched payload when kind is ok.
        reason: Human-readable failure reason when kind is failed.
    """

    kind: OutcomeKind
    value: Any = None
    reason: str | None = None

    @classmethod
    def ok(cls, value: Any) -> Outcome:
        return cls(OutcomeKind.OK, value=value)

    @classmethod
    def missing(cls) -> Outcome:
        return cls(OutcomeKind.MISSING)

    @classmethod
    def failed(cls, reason: str) -> Outcome:
        return cls(OutcomeKind.FAILED, reason=reason)

    @property
    def is_ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    def value_or(self, default: Any) -> Any:
        return self.value if self.is_ok else default
