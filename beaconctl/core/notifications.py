"""Fan-out of unsolicited sensor notification frames."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from beaconctl.core.errors import RegisterDecodeError
from beaconctl.core.model import (
    DeviceProfile,
    MotionChanged,
    NotificationFrame,
    RegisterSpec,
    SensorEvent,
    TemperatureSample,
)
from beaconctl.core.registers import decode_value

LOGGER = logging.getLogger(__name__)

SensorObserver = Callable[[SensorEvent], None]
E = TypeVar("E", bound=SensorEvent)

_EVENT_BUILDERS: dict[str, Callable[[object], SensorEvent]] = {
    "motion": lambda value: MotionChanged(moving=bool(value)),
    "temperature": lambda value: TemperatureSample(celsius=float(value)),
}


class NotificationRouter:
    """Classifies notification frames into sensor events and relays them.

    Motion frames are relayed as reported: the device already debounces them
    (moving is reported at once, stopping only after it stays still for two
    seconds). Nothing is buffered; only the last event of each kind is kept
    so late subscribers can query it.
    """

    def __init__(self, profile: DeviceProfile) -> None:
        self._routes: dict[int, RegisterSpec] = {
            spec.register_id: spec
            for spec in profile.registers.values()
            if spec.notify in _EVENT_BUILDERS
        }
        self._subscribers: list[SensorObserver] = []
        self._last: dict[type[SensorEvent], SensorEvent] = {}

    def subscribe(self, observer: SensorObserver) -> Callable[[], None]:
        self._subscribers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._subscribers:
                self._subscribers.remove(observer)

        return _unsubscribe

    def on_notification_frame(self, frame: NotificationFrame) -> SensorEvent | None:
        spec = self._routes.get(frame.discriminator)
        if spec is None:
            LOGGER.debug("Ignoring notification with unknown discriminator %#04x", frame.discriminator)
            return None
        try:
            value = decode_value(spec, frame.payload)
        except RegisterDecodeError as exc:
            LOGGER.warning("Dropping malformed %s notification: %s", spec.name, exc)
            return None

        event = _EVENT_BUILDERS[spec.notify](value)
        self._last[type(event)] = event
        for subscriber in tuple(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                LOGGER.exception("Sensor subscriber %r failed on %r", subscriber, event)
        return event

    def last_event(self, kind: type[E]) -> E | None:
        return self._last.get(kind)  # type: ignore[return-value]

    @property
    def motion_state(self) -> bool | None:
        event = self.last_event(MotionChanged)
        return event.moving if event is not None else None

    @property
    def temperature(self) -> float | None:
        event = self.last_event(TemperatureSample)
        return event.celsius if event is not None else None
