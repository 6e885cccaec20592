"""Persistent storage for the single WHOOP OAuth credential.

The store owns the one Credential record.  Every other component reads and
writes it through ``TokenStore`` only; nothing caches it beyond a single
request.  Storage itself is pluggable:

    FileTokenBackend   — JSON file on durable disk (production)
    MemoryTokenBackend — process-local dict (tests, ephemeral runs)

Usage::

    store = TokenStore(FileTokenBackend(Path("data/token.json")))
    store.save("access", "refresh", expires_in=3600)
    if store.is_expired():
        ...
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from src.whoop.base import Credential

logger = logging.getLogger("whoop_bridge.token_store")

# Refresh this long before the upstream token actually expires
EXPIRY_BUFFER_MS = 5 * 60 * 1000


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class TokenBackend(ABC):
    """Raw storage for one JSON-serializable record."""

    @abstractmethod
    def read(self) -> dict[str, Any] | None:
        """Return the stored record, or None if nothing is stored.

        Raises:
            ValueError: If the stored data cannot be decoded.
        """

    @abstractmethod
    def write(self, record: dict[str, Any]) -> None:
        """Replace the stored record."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the stored record.  No-op when nothing is stored."""


class FileTokenBackend(TokenBackend):
    """Stores the record as a JSON file.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so a crash mid-write never leaves a truncated token file.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValueError(f"Unreadable token file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Token file {self.path} does not hold a JSON object")
        return data

    def write(self, record: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryTokenBackend(TokenBackend):
    """Keeps the record in memory.  Lost on restart."""

    def __init__(self, record: dict[str, Any] | None = None) -> None:
        self._record = dict(record) if record is not None else None

    def read(self) -> dict[str, Any] | None:
        return dict(self._record) if self._record is not None else None

    def write(self, record: dict[str, Any]) -> None:
        self._record = dict(record)

    def delete(self) -> None:
        self._record = None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TokenStore:
    """Read/write/clear access to the one stored Credential.

    Args:
        backend: Where the record lives.
        clock:   Returns the current time in epoch seconds (``time.time`` by default).
    """

    def __init__(
        self,
        backend: TokenBackend,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def save(self, access_token: str, refresh_token: str, expires_in: int | float) -> Credential:
        """Persist a fresh credential, replacing any existing one.

        Args:
            access_token:  New bearer token.
            refresh_token: New (possibly rotated) refresh token.
            expires_in:    Lifetime in seconds, as reported by the token endpoint.

        Returns:
            The stored Credential.
        """
        now = self.now_ms()
        credential = Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + int(expires_in * 1000),
            updated_at=now,
        )
        self._backend.write(credential.to_dict())
        return credential

    def load(self) -> Credential | None:
        """Return the stored credential, or None if absent or corrupt."""
        try:
            raw = self._backend.read()
        except ValueError as exc:
            logger.error("Failed to read stored token: %s", exc)
            return None
        if raw is None:
            return None
        try:
            return Credential.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Stored token is malformed (%s); treating as absent", exc)
            return None

    def is_expired(self) -> bool:
        """True if there is no credential or it expires within the buffer."""
        credential = self.load()
        return credential is None or self.needs_refresh(credential)

    def needs_refresh(self, credential: Credential) -> bool:
        """True if ``credential`` expires within the buffer.  Does not read storage."""
        return credential.expires_within(self.now_ms(), EXPIRY_BUFFER_MS)

    def clear(self) -> None:
        self._backend.delete()
