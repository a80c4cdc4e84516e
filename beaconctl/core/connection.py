"""Connection lifecycle state machine for a single beacon."""

from __future__ import annotations

import asyncio
import functools
import logging
import weakref
from collections.abc import Callable
from typing import Any, Protocol

from beaconctl.core.errors import (
    BeaconctlError,
    ConnectionFailedError,
    ErrorReason,
    InvalidStateError,
    LinkLostError,
    TransportAuthorizationError,
    TransportError,
    TransportIdentifierError,
    TransportTimeoutError,
    TransportUnavailableError,
)
from beaconctl.core.model import BeaconIdentifier, ConnectionState, ConnectionStatus, NotificationFrame
from beaconctl.transports.base import Transport

LOGGER = logging.getLogger(__name__)

_TERMINAL_OPEN_ERRORS = (TransportAuthorizationError, TransportIdentifierError, TransportUnavailableError)
_BUSY_STATUSES = (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED, ConnectionStatus.DISCONNECTING)


class ConnectionObserver(Protocol):
    """Receives connection and sensor events. Every method is optional."""

    def connection_succeeded(self, connection: Any) -> None: ...

    def connection_failed(self, connection: Any, error: ConnectionFailedError) -> None: ...

    def connection_disconnected(self, connection: Any, error: BeaconctlError | None) -> None: ...

    def motion_state_changed(self, connection: Any, moving: bool) -> None: ...


class ObserverRef:
    """Non-owning reference to an observer; dispatch stops once it is collected."""

    def __init__(self, observer: Any | None = None) -> None:
        self._ref = weakref.ref(observer) if observer is not None else None

    @property
    def observer(self) -> Any | None:
        return self._ref() if self._ref is not None else None

    def emit(self, method: str, *args: Any) -> None:
        observer = self.observer
        if observer is None:
            return
        handler = getattr(observer, method, None)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception:
            LOGGER.exception("Observer %s.%s failed", type(observer).__name__, method)


class ConnectionManager:
    """Drives Idle -> Connecting(n) -> Connected -> Disconnecting -> Disconnected.

    ``Disconnected`` ends a connection session. A later ``connect`` starts a
    fresh session with its attempt counter reset; the hooks let the owner
    build per-session resources (``on_connected``) and tear them down
    (``on_link_lost``).
    """

    def __init__(
        self,
        identifier: BeaconIdentifier | None,
        transport: Transport,
        *,
        observer: ObserverRef | Any | None = None,
        source: Any | None = None,
        on_connected: Callable[[Any], None] | None = None,
        on_link_lost: Callable[[BeaconctlError | None], None] | None = None,
        on_frame: Callable[[NotificationFrame], None] | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
    ) -> None:
        self.identifier = identifier
        self._transport = transport
        self._observer = observer if isinstance(observer, ObserverRef) else ObserverRef(observer)
        self._source = source if source is not None else self
        self._on_connected = on_connected
        self._on_link_lost = on_link_lost
        self._on_frame = on_frame
        self._on_state_change = on_state_change
        self._state = ConnectionState(ConnectionStatus.IDLE)
        self._link: Any | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._cancel_event: asyncio.Event | None = None
        # Identifies the attempt whose link callbacks are still honoured.
        self._link_token: object | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def link(self) -> Any | None:
        return self._link

    @property
    def connected(self) -> bool:
        return self._state.status is ConnectionStatus.CONNECTED

    def _key(self) -> str:
        return self.identifier.key if self.identifier is not None else "<missing identifier>"

    async def connect(self, max_attempts: int = 3, attempt_timeout_s: float = 10.0) -> ConnectionState:
        """Open the link, retrying up to ``max_attempts`` times.

        Returns the ``Connected`` state or raises ``ConnectionFailedError``
        carrying the terminal reason. Each failed attempt that is retried is
        reported to the observer as ``connection_failed``.
        """
        if self._state.status in _BUSY_STATUSES:
            raise InvalidStateError(f"Cannot connect while {self._state.status.value}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if attempt_timeout_s <= 0:
            raise ValueError("attempt_timeout_s must be positive")

        self._loop = asyncio.get_running_loop()
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event

        if self.identifier is None:
            error = ConnectionFailedError(
                "Beacon identifier is missing or malformed",
                reason=ErrorReason.IDENTIFIER_MISSING,
            )
            self._fail(error)
            raise error

        try:
            link = await self._attempt_loop(max_attempts, attempt_timeout_s, cancel_event)
        except asyncio.CancelledError:
            if self._state.status is ConnectionStatus.CONNECTING:
                self._fail(
                    ConnectionFailedError(
                        "Connection cancelled",
                        reason=ErrorReason.CANCELLED,
                        attempt=self._state.attempt,
                    )
                )
            raise
        except ConnectionFailedError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            self._fail(
                ConnectionFailedError(
                    f"Connection aborted: {exc}",
                    reason=ErrorReason.NOT_CONNECTED_TO_READ_WRITE,
                    attempt=self._state.attempt,
                )
            )
            raise

        self._link = link
        self._set_state(ConnectionState(ConnectionStatus.CONNECTED))
        LOGGER.info("Connected to %s", self._key())
        if self._on_connected is not None:
            self._on_connected(link)
        self._observer.emit("connection_succeeded", self._source)
        return self._state

    def cancel(self) -> None:
        """Abort a pending connect. Safe to call from any state and any thread."""
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is not None and running is not loop and not loop.is_closed():
            loop.call_soon_threadsafe(self._cancel_now)
            return
        self._cancel_now()

    async def disconnect(self) -> None:
        status = self._state.status
        if status is ConnectionStatus.CONNECTING:
            self.cancel()
            return
        if status is not ConnectionStatus.CONNECTED:
            return

        link = self._link
        self._link = None
        self._link_token = None
        self._set_state(ConnectionState(ConnectionStatus.DISCONNECTING))
        if self._on_link_lost is not None:
            self._on_link_lost(None)
        try:
            await self._transport.close(link)
        except TransportError as exc:
            LOGGER.warning("Closing link to %s failed: %s", self._key(), exc)
        finally:
            self._set_state(ConnectionState(ConnectionStatus.DISCONNECTED))
            LOGGER.info("Disconnected from %s", self._key())
            self._observer.emit("connection_disconnected", self._source, None)

    def handle_link_lost(self, cause: str | BaseException) -> None:
        """Record an unsolicited link drop. Must run on the connection's loop."""
        if self._state.status is not ConnectionStatus.CONNECTED:
            return
        self._link = None
        self._link_token = None
        self._set_state(ConnectionState(ConnectionStatus.DISCONNECTING))
        error = LinkLostError(f"Link to {self._key()} dropped: {cause}")
        if self._on_link_lost is not None:
            self._on_link_lost(error)
        self._set_state(
            ConnectionState(
                ConnectionStatus.DISCONNECTED,
                reason=ErrorReason.DISCONNECTED,
                cause=str(cause),
            )
        )
        LOGGER.warning("Link to %s dropped: %s", self._key(), cause)
        self._observer.emit("connection_disconnected", self._source, error)

    async def _attempt_loop(
        self,
        max_attempts: int,
        attempt_timeout_s: float,
        cancel_event: asyncio.Event,
    ) -> Any:
        last_error: TransportError | None = None
        for attempt in range(1, max_attempts + 1):
            deadline = asyncio.get_running_loop().time() + attempt_timeout_s
            self._set_state(ConnectionState(ConnectionStatus.CONNECTING, attempt=attempt, deadline=deadline))
            try:
                return await self._attempt(attempt, attempt_timeout_s, cancel_event)
            except _TERMINAL_OPEN_ERRORS as exc:
                raise ConnectionFailedError(str(exc), reason=exc.reason, attempt=attempt) from exc
            except TransportError as exc:
                last_error = exc
                LOGGER.info("Connect attempt %d/%d to %s failed: %s", attempt, max_attempts, self._key(), exc)
                if attempt < max_attempts:
                    self._observer.emit(
                        "connection_failed",
                        self._source,
                        ConnectionFailedError(
                            str(exc),
                            reason=exc.reason or ErrorReason.NOT_CONNECTED_TO_READ_WRITE,
                            attempt=attempt,
                        ),
                    )

        raise ConnectionFailedError(
            f"Could not connect to {self._key()} after {max_attempts} attempt(s): {last_error}",
            reason=ErrorReason.NOT_CONNECTED_TO_READ_WRITE,
            attempt=max_attempts,
        ) from last_error

    async def _attempt(self, attempt: int, timeout_s: float, cancel_event: asyncio.Event) -> Any:
        token = object()
        self._link_token = token
        open_task = asyncio.ensure_future(
            self._transport.open(
                self.identifier,
                on_frame=functools.partial(self._deliver_frame, token),
                on_drop=functools.partial(self._report_drop, token),
            )
        )
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {open_task, cancel_wait},
                timeout=timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._discard(open_task)
            raise
        finally:
            cancel_wait.cancel()

        if cancel_event.is_set():
            await self._discard(open_task)
            raise ConnectionFailedError("Connection cancelled", reason=ErrorReason.CANCELLED, attempt=attempt)
        if open_task not in done:
            await self._discard(open_task)
            raise TransportTimeoutError(f"Attempt {attempt} timed out after {timeout_s}s")
        return open_task.result()

    async def _discard(self, task: asyncio.Future) -> None:
        """Cancel an open attempt, closing the link if it completed anyway."""
        task.cancel()
        await asyncio.wait({task})
        if task.cancelled() or task.exception() is not None:
            return
        try:
            await self._transport.close(task.result())
        except TransportError as exc:
            LOGGER.warning("Closing abandoned link to %s failed: %s", self._key(), exc)

    def _cancel_now(self) -> None:
        status = self._state.status
        if status is ConnectionStatus.CONNECTING and self._cancel_event is not None:
            self._cancel_event.set()
        elif status is ConnectionStatus.IDLE:
            self._fail(ConnectionFailedError("Connection cancelled", reason=ErrorReason.CANCELLED))

    def _deliver_frame(self, token: object, frame: NotificationFrame) -> None:
        self._call_in_loop(self._dispatch_frame, token, frame)

    def _dispatch_frame(self, token: object, frame: NotificationFrame) -> None:
        if self._on_frame is None:
            return
        if token is not self._link_token:
            LOGGER.debug("Ignoring frame from a stale link to %s", self._key())
            return
        if self._state.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            self._on_frame(frame)

    def _report_drop(self, token: object, cause: str) -> None:
        self._call_in_loop(self._drop_link, token, cause)

    def _drop_link(self, token: object, cause: str) -> None:
        if token is not self._link_token:
            LOGGER.debug("Ignoring drop of a stale link to %s: %s", self._key(), cause)
            return
        self.handle_link_lost(cause)

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            LOGGER.debug("Dropping transport callback for %s: event loop is gone", self._key())
            return
        loop.call_soon_threadsafe(callback, *args)

    def _fail(self, error: ConnectionFailedError) -> None:
        self._link_token = None
        self._set_state(
            ConnectionState(
                ConnectionStatus.DISCONNECTED,
                attempt=error.attempt,
                reason=error.reason,
                cause=str(error),
            )
        )
        LOGGER.info("Connection to %s failed: %s", self._key(), error)
        self._observer.emit("connection_failed", self._source, error)

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        LOGGER.debug("%s -> %s", self._key(), state)
        if self._on_state_change is not None:
            self._on_state_change(state)
