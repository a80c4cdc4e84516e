from __future__ import annotations

import asyncio
import gc
import threading

import pytest

from beaconctl.core.connection import ConnectionManager, ObserverRef
from beaconctl.core.errors import (
    ConnectionFailedError,
    ErrorReason,
    InvalidStateError,
    LinkLostError,
    TransportAuthorizationError,
    TransportConnectError,
    TransportIdentifierError,
    TransportUnavailableError,
)
from beaconctl.core.identifier import from_ibeacon, parse_identifier
from beaconctl.core.model import ConnectionStatus, NotificationFrame
from beaconctl.transports.ble_gatt import BLEGATTTransport
from conftest import FakeTransport

MAC = "AA:BB:CC:DD:EE:FF"


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def connection_succeeded(self, connection) -> None:
        self.events.append(("succeeded",))

    def connection_failed(self, connection, error) -> None:
        self.events.append(("failed", error.reason, error.attempt))

    def connection_disconnected(self, connection, error) -> None:
        self.events.append(("disconnected", error))


def _manager(transport, observer=None, **hooks) -> ConnectionManager:
    return ConnectionManager(parse_identifier(MAC), transport, observer=observer, **hooks)


def test_connects_after_two_failed_attempts(profile) -> None:
    transport = FakeTransport(profile, [TransportConnectError("busy"), TransportConnectError("busy"), "ok"])
    observer = RecordingObserver()
    manager = _manager(transport, observer)

    state = asyncio.run(manager.connect(max_attempts=3, attempt_timeout_s=1.0))

    assert state.status is ConnectionStatus.CONNECTED
    assert manager.connected
    assert transport.open_calls == 3
    assert observer.events == [
        ("failed", ErrorReason.NOT_CONNECTED_TO_READ_WRITE, 1),
        ("failed", ErrorReason.NOT_CONNECTED_TO_READ_WRITE, 2),
        ("succeeded",),
    ]


def test_gives_up_after_exactly_max_attempts_each_with_own_window(profile) -> None:
    transport = FakeTransport(profile, ["hang", "hang", "hang", "ok"])
    states = []
    manager = _manager(transport, on_state_change=states.append)

    with pytest.raises(ConnectionFailedError) as excinfo:
        asyncio.run(manager.connect(max_attempts=3, attempt_timeout_s=0.05))

    assert excinfo.value.reason is ErrorReason.NOT_CONNECTED_TO_READ_WRITE
    assert transport.open_calls == 3
    connecting = [s for s in states if s.status is ConnectionStatus.CONNECTING]
    assert [s.attempt for s in connecting] == [1, 2, 3]
    assert connecting[0].deadline < connecting[1].deadline < connecting[2].deadline
    assert manager.state.status is ConnectionStatus.DISCONNECTED
    assert manager.state.reason is ErrorReason.NOT_CONNECTED_TO_READ_WRITE


@pytest.mark.parametrize(
    ("error", "reason"),
    [
        (TransportAuthorizationError("denied"), ErrorReason.NOT_AUTHORIZED),
        (TransportUnavailableError("radio off"), ErrorReason.INTERNET_CONNECTIVITY),
        (TransportIdentifierError("needs discovery"), ErrorReason.IDENTIFIER_MISSING),
    ],
)
def test_radio_errors_are_not_retried(profile, error, reason) -> None:
    transport = FakeTransport(profile, [error, "ok"])
    observer = RecordingObserver()
    manager = _manager(transport, observer)

    with pytest.raises(ConnectionFailedError) as excinfo:
        asyncio.run(manager.connect(max_attempts=3, attempt_timeout_s=1.0))

    assert excinfo.value.reason is reason
    assert transport.open_calls == 1
    assert observer.events == [("failed", reason, 1)]


def test_missing_identifier_fails_without_opening(profile, transport) -> None:
    observer = RecordingObserver()
    manager = ConnectionManager(None, transport, observer=observer)

    with pytest.raises(ConnectionFailedError) as excinfo:
        asyncio.run(manager.connect())

    assert excinfo.value.reason is ErrorReason.IDENTIFIER_MISSING
    assert transport.open_calls == 0
    assert observer.events == [("failed", ErrorReason.IDENTIFIER_MISSING, None)]


def test_cancel_while_connecting(profile) -> None:
    transport = FakeTransport(profile, ["hang"])
    manager = _manager(transport)

    async def scenario():
        task = asyncio.ensure_future(manager.connect(attempt_timeout_s=5.0))
        await asyncio.sleep(0.01)
        manager.cancel()
        with pytest.raises(ConnectionFailedError) as excinfo:
            await task
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.reason is ErrorReason.CANCELLED
    assert manager.state.status is ConnectionStatus.DISCONNECTED
    assert manager.state.reason is ErrorReason.CANCELLED
    assert transport.open_calls == 1


def test_cancel_from_another_thread(profile) -> None:
    transport = FakeTransport(profile, ["hang"])
    manager = _manager(transport)

    async def scenario():
        task = asyncio.ensure_future(manager.connect(attempt_timeout_s=5.0))
        await asyncio.sleep(0.01)
        await asyncio.get_running_loop().run_in_executor(None, manager.cancel)
        with pytest.raises(ConnectionFailedError) as excinfo:
            await task
        return excinfo.value.reason

    assert asyncio.run(scenario()) is ErrorReason.CANCELLED


def test_cancel_when_idle_then_reconnect(profile, transport) -> None:
    manager = _manager(transport)
    manager.cancel()
    assert manager.state.status is ConnectionStatus.DISCONNECTED
    assert manager.state.reason is ErrorReason.CANCELLED

    state = asyncio.run(manager.connect())
    assert state.status is ConnectionStatus.CONNECTED


def test_connect_while_connected_rejected(profile, transport) -> None:
    manager = _manager(transport)

    async def scenario():
        await manager.connect()
        with pytest.raises(InvalidStateError):
            await manager.connect()
        manager.cancel()
        return manager.state.status

    assert asyncio.run(scenario()) is ConnectionStatus.CONNECTED


def test_disconnect_closes_link_and_notifies(profile, transport) -> None:
    observer = RecordingObserver()
    lost = []
    manager = _manager(transport, observer, on_link_lost=lost.append)

    async def scenario():
        await manager.connect()
        link = manager.link
        await manager.disconnect()
        await manager.disconnect()
        return link

    link = asyncio.run(scenario())
    assert transport.closed == [link]
    assert manager.state.status is ConnectionStatus.DISCONNECTED
    assert manager.state.reason is None
    assert lost == [None]
    assert observer.events == [("succeeded",), ("disconnected", None)]


def test_link_drop_reported_from_transport_thread(profile, transport) -> None:
    observer = RecordingObserver()
    lost = []
    manager = _manager(transport, observer, on_link_lost=lost.append)

    async def scenario():
        await manager.connect()
        worker = threading.Thread(target=transport.on_drop, args=("supervision timeout",))
        worker.start()
        worker.join()
        for _ in range(10):
            await asyncio.sleep(0.01)
            if not manager.connected:
                break

    asyncio.run(scenario())
    assert manager.state.status is ConnectionStatus.DISCONNECTED
    assert manager.state.reason is ErrorReason.DISCONNECTED
    assert manager.state.cause == "supervision timeout"
    assert len(lost) == 1 and isinstance(lost[0], LinkLostError)
    kind, error = observer.events[-1]
    assert kind == "disconnected" and error.reason is ErrorReason.DISCONNECTED


def test_frames_delivered_only_while_connected(profile, transport) -> None:
    frames = []
    manager = _manager(transport, on_frame=frames.append)
    frame = NotificationFrame(discriminator=0x22, payload=b"\x01")

    async def scenario():
        await manager.connect()
        transport.on_frame(frame)
        await asyncio.sleep(0)
        await manager.disconnect()
        transport.on_frame(frame)
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert frames == [frame]


def test_collected_observer_is_skipped() -> None:
    observer = RecordingObserver()
    ref = ObserverRef(observer)
    del observer
    gc.collect()
    assert ref.observer is None
    ref.emit("connection_succeeded", object())


def test_failing_observer_does_not_break_connect(profile, transport) -> None:
    class Broken:
        def connection_succeeded(self, connection) -> None:
            raise RuntimeError("observer bug")

    observer = Broken()
    manager = _manager(transport, observer)
    assert asyncio.run(manager.connect()).status is ConnectionStatus.CONNECTED


def test_ibeacon_identifier_over_ble_fails_once(profile) -> None:
    identifier = from_ibeacon("b9407f30-f5f8-466e-aff9-25556b57fe6d", 1, 2)
    states = []
    manager = ConnectionManager(identifier, BLEGATTTransport(profile), on_state_change=states.append)

    with pytest.raises(ConnectionFailedError) as excinfo:
        asyncio.run(manager.connect(max_attempts=3, attempt_timeout_s=1.0))

    assert excinfo.value.reason is ErrorReason.IDENTIFIER_MISSING
    assert [s.attempt for s in states if s.status is ConnectionStatus.CONNECTING] == [1]
    assert manager.state.reason is ErrorReason.IDENTIFIER_MISSING


def test_late_callbacks_from_previous_link_are_ignored(profile, transport) -> None:
    observer = RecordingObserver()
    lost = []
    frames = []
    manager = _manager(transport, observer, on_link_lost=lost.append, on_frame=frames.append)
    frame = NotificationFrame(discriminator=0x22, payload=b"\x01")

    async def scenario():
        await manager.connect()
        first_drop, first_frame = transport.on_drop, transport.on_frame
        await manager.disconnect()
        await manager.connect()
        first_drop("peripheral disconnected")
        first_frame(frame)
        await asyncio.sleep(0.01)
        return manager.link

    link = asyncio.run(scenario())
    assert manager.state.status is ConnectionStatus.CONNECTED
    assert link.number == 2
    assert lost == [None]
    assert frames == []
    assert observer.events == [("succeeded",), ("disconnected", None), ("succeeded",)]


def test_current_link_drop_still_reported_after_reconnect(profile, transport) -> None:
    manager = _manager(transport)

    async def scenario():
        await manager.connect()
        await manager.disconnect()
        await manager.connect()
        transport.on_drop("supervision timeout")
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert manager.state.status is ConnectionStatus.DISCONNECTED
    assert manager.state.cause == "supervision timeout"
