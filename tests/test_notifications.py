from __future__ import annotations

import logging

from beaconctl.core.model import MotionChanged, NotificationFrame, TemperatureSample
from beaconctl.core.notifications import NotificationRouter


def _frame(profile, register: str, payload: bytes) -> NotificationFrame:
    return NotificationFrame(discriminator=profile.registers[register].register_id, payload=payload)


def test_motion_and_temperature_are_routed(profile) -> None:
    router = NotificationRouter(profile)
    seen = []
    router.subscribe(seen.append)

    router.on_notification_frame(_frame(profile, "motion_state", b"\x01"))
    router.on_notification_frame(_frame(profile, "temperature", b"\x80\x15"))

    assert seen == [MotionChanged(moving=True), TemperatureSample(celsius=21.5)]
    assert router.motion_state is True
    assert router.temperature == 21.5


def test_repeated_motion_frames_are_relayed_as_reported(profile) -> None:
    router = NotificationRouter(profile)
    seen = []
    router.subscribe(seen.append)

    for payload in (b"\x01", b"\x01", b"\x00"):
        router.on_notification_frame(_frame(profile, "motion_state", payload))

    assert [event.moving for event in seen] == [True, True, False]


def test_unknown_discriminator_is_ignored(profile) -> None:
    router = NotificationRouter(profile)
    seen = []
    router.subscribe(seen.append)

    assert router.on_notification_frame(NotificationFrame(discriminator=0x99, payload=b"\x01")) is None
    assert router.on_notification_frame(_frame(profile, "major", b"\x01\x00")) is None
    assert seen == []


def test_malformed_frame_is_dropped(profile, caplog) -> None:
    router = NotificationRouter(profile)
    with caplog.at_level(logging.WARNING):
        assert router.on_notification_frame(_frame(profile, "temperature", b"\x01")) is None
    assert "malformed temperature" in caplog.text
    assert router.temperature is None


def test_failing_subscriber_does_not_block_others(profile) -> None:
    router = NotificationRouter(profile)
    seen = []

    def broken(_event) -> None:
        raise RuntimeError("boom")

    router.subscribe(broken)
    router.subscribe(seen.append)
    router.on_notification_frame(_frame(profile, "motion_state", b"\x00"))

    assert seen == [MotionChanged(moving=False)]


def test_unsubscribe_stops_delivery(profile) -> None:
    router = NotificationRouter(profile)
    seen = []
    unsubscribe = router.subscribe(seen.append)
    unsubscribe()
    unsubscribe()

    router.on_notification_frame(_frame(profile, "motion_state", b"\x01"))
    assert seen == []
    assert router.last_event(MotionChanged) == MotionChanged(moving=True)
