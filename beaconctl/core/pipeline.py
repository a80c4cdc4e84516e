"""Serialized register request pipeline over one established link."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from beaconctl.core.errors import (
    BeaconctlError,
    LinkDroppedError,
    LinkLostError,
    NotConnectedError,
    OperationTimeoutError,
    PipelineBusyError,
    RegisterDecodeError,
    TransportError,
    TransportTimeoutError,
)
from beaconctl.core.model import RegisterRequest
from beaconctl.core.registers import decode_response
from beaconctl.transports.base import Transport

LOGGER = logging.getLogger(__name__)


@dataclass(eq=False)
class RegisterOperation:
    request: RegisterRequest
    issued_at: float
    deadline: float
    result: asyncio.Future
    timer: asyncio.TimerHandle | None = None

    def describe(self) -> str:
        return f"{self.request.kind.value} of '{self.request.register.name}'"


class RequestPipeline:
    """FIFO of register operations with a single in-flight slot.

    The timeout of an operation starts when it is submitted, so time spent
    queued counts against it. Responses are not correlated beyond the
    in-flight slot: once an operation times out its send is cancelled and a
    late response is discarded.
    """

    def __init__(
        self,
        transport: Transport,
        link: Any,
        *,
        timeout_s: float = 5.0,
        on_link_lost: Callable[[BeaconctlError], None] | None = None,
    ) -> None:
        self._transport = transport
        self._link = link
        self._timeout_s = timeout_s
        self._on_link_lost = on_link_lost
        self._queue: deque[RegisterOperation] = deque()
        self._in_flight: RegisterOperation | None = None
        self._send_task: asyncio.Future | None = None
        self._worker: asyncio.Task | None = None
        self._wakeup = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed_error: BeaconctlError | None = None
        self._lease: object | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and self._closed_error is None

    @property
    def pending(self) -> int:
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    @property
    def in_flight(self) -> RegisterRequest | None:
        return self._in_flight.request if self._in_flight is not None else None

    @property
    def exclusive_held(self) -> bool:
        return self._lease is not None

    def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = asyncio.get_running_loop().create_task(self._run())

    def submit(
        self,
        request: RegisterRequest,
        *,
        timeout_s: float | None = None,
        lease: object | None = None,
    ) -> asyncio.Future:
        """Queue ``request`` and return a future resolved exactly once."""
        if self._closed_error is not None:
            raise NotConnectedError(f"Link is closed: {self._closed_error}")
        if self._worker is None:
            raise NotConnectedError("Request pipeline is not running")
        if self._lease is not None and lease is not self._lease:
            raise PipelineBusyError("A firmware update holds the link; register operations are suspended")

        loop = asyncio.get_running_loop()
        now = loop.time()
        timeout = self._timeout_s if timeout_s is None else timeout_s
        op = RegisterOperation(
            request=request,
            issued_at=now,
            deadline=now + timeout,
            result=loop.create_future(),
        )
        op.timer = loop.call_at(op.deadline, self._expire, op)
        op.result.add_done_callback(lambda _fut, op=op: self._on_resolved(op))
        self._queue.append(op)
        self._idle.clear()
        self._wakeup.set()
        LOGGER.debug("Queued %s (pending=%d)", op.describe(), self.pending)
        return op.result

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[object]:
        """Hold the link exclusively; yields the lease token to pass to ``submit``."""
        if self._lease is not None:
            raise PipelineBusyError("Link is already held exclusively")
        if not self.running:
            raise NotConnectedError("Request pipeline is not running")
        lease = object()
        self._lease = lease
        try:
            await self._idle.wait()
            yield lease
        finally:
            self._lease = None

    def close(self, error: BeaconctlError | None = None) -> None:
        """Resolve every outstanding operation with ``error`` and stop the worker."""
        if self._closed_error is not None:
            return
        self._closed_error = error or LinkLostError("Link closed")
        outstanding = ([self._in_flight] if self._in_flight is not None else []) + list(self._queue)
        self._queue.clear()
        for op in outstanding:
            self._resolve_error(op, self._closed_error)
        if outstanding:
            LOGGER.debug("Drained %d operation(s): %s", len(outstanding), self._closed_error)
        self._idle.set()
        self._wakeup.set()

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if self._worker is not None and self._worker is not current:
            self._worker.cancel()

    async def _run(self) -> None:
        while self._closed_error is None:
            if not self._queue:
                self._idle.set()
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            op = self._queue.popleft()
            if op.result.done():
                continue
            await self._dispatch(op)

    async def _dispatch(self, op: RegisterOperation) -> None:
        self._in_flight = op
        send_task = asyncio.ensure_future(self._transport.send(self._link, op.request))
        self._send_task = send_task
        try:
            await asyncio.wait({send_task})
        finally:
            self._in_flight = None
            self._send_task = None
            if not send_task.done():
                send_task.cancel()

        if send_task.cancelled():
            LOGGER.debug("Discarded response slot for %s", op.describe())
            return

        exc = send_task.exception()
        if exc is None:
            try:
                value = decode_response(op.request, send_task.result())
            except RegisterDecodeError as decode_exc:
                self._resolve_error(op, decode_exc)
            else:
                self._resolve(op, value)
            return

        if isinstance(exc, LinkDroppedError):
            error = LinkLostError(f"Link dropped during {op.describe()}: {exc}")
            self._resolve_error(op, error)
            self.close(error)
            if self._on_link_lost is not None:
                self._on_link_lost(error)
        elif isinstance(exc, TransportTimeoutError):
            self._resolve_error(op, OperationTimeoutError(f"{op.describe()} timed out: {exc}"))
        elif isinstance(exc, TransportError):
            self._resolve_error(op, NotConnectedError(f"{op.describe()} failed: {exc}"))
        else:
            self._resolve_error(op, exc)

    def _expire(self, op: RegisterOperation) -> None:
        timeout = op.deadline - op.issued_at
        self._resolve_error(op, OperationTimeoutError(f"{op.describe()} timed out after {timeout:.2f}s"))

    def _on_resolved(self, op: RegisterOperation) -> None:
        if op.timer is not None:
            op.timer.cancel()
        if op is self._in_flight and self._send_task is not None and not self._send_task.done():
            self._send_task.cancel()

    @staticmethod
    def _resolve(op: RegisterOperation, value: Any) -> None:
        if not op.result.done():
            op.result.set_result(value)

    @staticmethod
    def _resolve_error(op: RegisterOperation, error: BaseException) -> None:
        if not op.result.done():
            op.result.set_exception(error)
