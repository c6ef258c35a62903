"""Management connection lifecycle: open, liveness check, bounded reconnect."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import libvirt

from .config import LibvirtConfig
from .errors import ConnectionUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """One open read-only connection to the management API.

    Sessions are never repaired in place. When liveness fails the guardian
    builds a new one and swaps the reference.
    """

    uri: str
    conn: Any
    connected_at: float = field(default_factory=time.time)

    def is_alive(self) -> bool:
        try:
            return bool(self.conn.isAlive())
        except libvirt.libvirtError:
            return False


def open_read_only(uri: str) -> Any:
    """Open a read-only libvirt connection or raise ``libvirt.libvirtError``."""
    conn = libvirt.openReadOnly(uri)
    if conn is None:
        raise libvirt.libvirtError(f"failed to open connection to {uri}")
    return conn


class ConnectionGuardian:
    """Owns the process-wide session and keeps it live.

    ``ensure_live`` is cheap when the session answers its liveness check.
    Otherwise the stale session is closed and up to ``reconnect_attempts``
    new connections are tried with linear or exponential backoff between
    them. The guardian stays usable after a failed cycle.
    """

    def __init__(
        self,
        config: LibvirtConfig,
        opener: Callable[[str], Any] = open_read_only,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._opener = opener
        self._sleep = sleep
        self._lock = threading.Lock()
        self._session: Session | None = None
        self._closed = False
        self.reconnects = 0

    @property
    def session(self) -> Session | None:
        return self._session

    def backoff(self, attempt: int) -> float:
        """Delay in seconds after failed attempt number *attempt* (1-based)."""
        base = self._config.reconnect_backoff_seconds
        if self._config.backoff == "linear":
            return base * attempt
        return base * (2 ** (attempt - 1))

    def connect(self) -> Session:
        """Open the initial session. Failure here is fatal to the caller."""
        with self._lock:
            try:
                conn = self._opener(self._config.uri)
            except libvirt.libvirtError as exc:
                raise ConnectionUnavailable(
                    f"cannot connect to {self._config.uri}: {exc}"
                ) from exc
            self._session = Session(uri=self._config.uri, conn=conn)
            self._closed = False
            logger.info("Connected to %s", self._config.uri)
            return self._session

    def ensure_live(self) -> Session:
        """Return a live session, reconnecting if the current one is dead."""
        with self._lock:
            current = self._session
            if current is not None and current.is_alive():
                return current

            if current is not None:
                logger.warning("Connection to %s is no longer alive, reconnecting", current.uri)
                self._close_quietly(current)

            attempts = self._config.reconnect_attempts
            last_error: Exception | None = None
            for attempt in range(1, attempts + 1):
                try:
                    conn = self._opener(self._config.uri)
                except libvirt.libvirtError as exc:
                    last_error = exc
                    logger.warning(
                        "Reconnect attempt %d/%d to %s failed: %s",
                        attempt, attempts, self._config.uri, exc,
                    )
                    if attempt < attempts:
                        self._sleep(self.backoff(attempt))
                    continue
                self._session = Session(uri=self._config.uri, conn=conn)
                self.reconnects += 1
                logger.info("Reconnected to %s on attempt %d", self._config.uri, attempt)
                return self._session

            self._session = None
            raise ConnectionUnavailable(
                f"cannot reconnect to {self._config.uri} after {attempts} attempts: {last_error}"
            )

    def close(self) -> None:
        """Close the current session. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._session is not None:
                self._close_quietly(self._session)
                self._session = None
            logger.info("Connection to %s closed", self._config.uri)

    @staticmethod
    def _close_quietly(session: Session) -> None:
        try:
            session.conn.close()
        except libvirt.libvirtError as exc:
            logger.debug("Ignoring error while closing %s: %s", session.uri, exc)
