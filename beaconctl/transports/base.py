"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol

from beaconctl.core.model import BeaconIdentifier, NotificationFrame, RegisterRequest

FrameHandler = Callable[[NotificationFrame], None]
DropHandler = Callable[[str], None]


class Transport(Protocol):
    async def open(
        self,
        identifier: BeaconIdentifier,
        *,
        on_frame: FrameHandler,
        on_drop: DropHandler,
    ) -> Any:
        """Open a link to the device and return an opaque link handle.

        ``on_frame`` and ``on_drop`` may be called from any thread.
        """

    async def send(self, link: Any, request: RegisterRequest) -> bytes:
        """Send one register request and return the raw response bytes."""

    async def close(self, link: Any) -> None:
        """Close a link previously returned by ``open``."""
