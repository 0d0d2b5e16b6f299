"""
CAN Bus Transport Layer

Thin wrapper around a python-can bus for talking to MCP CAN bootloaders.

This module provides:
- Bus configuration (interface, channel, bitrate)
- Opening / closing the bus with error translation
- Frame send and receive
- An inbound frame iterator for the session driver loop

No identifier filtering is done here; every frame on the bus is passed up
and the flash session decides what belongs to it.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import can

logger = logging.getLogger(__name__)


class CANTransportError(Exception):
    """Base exception for CAN transport errors"""
    pass


class CANTimeoutError(CANTransportError):
    """A frame could not be sent within the send timeout"""
    pass


@dataclass
class BusConfig:
    """
    python-can bus settings.

    Attributes:
        interface: python-can interface name (socketcan, pcan, slcan, virtual, ...)
        channel: Interface channel (e.g. "can0", "PCAN_USBBUS1", "/dev/ttyACM0")
        bitrate: Bitrate in bit/s, or None to keep the interface setting
        send_timeout: Seconds to wait for the transmit buffer
    """
    interface: str = "socketcan"
    channel: str = "can0"
    bitrate: Optional[int] = None
    send_timeout: float = 1.0

    def bus_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"interface": self.interface, "channel": self.channel}
        if self.bitrate is not None:
            kwargs["bitrate"] = self.bitrate
        return kwargs

    def describe(self) -> str:
        text = f"{self.interface}:{self.channel}"
        if self.bitrate:
            text += f" @ {self.bitrate} bit/s"
        return text


class CANTransport:
    """
    CAN bus transport for the bootloader protocol.

    Example:
        with CANTransport(BusConfig(channel="can0")) as transport:
            transport.send(message)
            for msg in transport.frames(idle_timeout=2.0):
                ...
    """

    def __init__(self, config: Optional[BusConfig] = None, bus: Optional[can.BusABC] = None):
        """
        Initialize transport layer.

        Args:
            config: Bus settings used by open()
            bus: Already opened python-can bus to use instead of opening one
        """
        self.config = config or BusConfig()
        self.bus: Optional[can.BusABC] = bus
        self._owns_bus = bus is None

    @property
    def is_open(self) -> bool:
        return self.bus is not None

    def open(self) -> None:
        """
        Open the CAN bus.

        Raises:
            CANTransportError: If the interface cannot be opened
        """
        if self.bus is not None:
            return
        try:
            self.bus = can.Bus(**self.config.bus_kwargs())
        except (can.CanError, OSError, ValueError) as e:
            raise CANTransportError(f"Cannot open CAN bus {self.config.describe()}: {e}") from e
        self._owns_bus = True
        logger.debug("Opened CAN bus %s", self.config.describe())

    def close(self) -> None:
        """Shut down the bus if this transport opened it."""
        if self.bus is not None and self._owns_bus:
            self.bus.shutdown()
            logger.debug("Closed CAN bus %s", self.config.describe())
        self.bus = None

    def __enter__(self) -> "CANTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_bus(self) -> can.BusABC:
        if self.bus is None:
            raise CANTransportError("CAN bus is not open")
        return self.bus

    def send(self, message: can.Message) -> None:
        """
        Transmit one frame.

        Raises:
            CANTimeoutError: If the transmit buffer stayed full
            CANTransportError: On any other send failure
        """
        bus = self._require_bus()
        logger.debug("TX %08X %s", message.arbitration_id, bytes(message.data).hex(" "))
        try:
            bus.send(message, timeout=self.config.send_timeout)
        except can.CanTimeoutError as e:
            raise CANTimeoutError(f"Timed out sending frame: {e}") from e
        except (can.CanError, OSError) as e:
            raise CANTransportError(f"Failed to send frame: {e}") from e

    def recv(self, timeout: Optional[float] = None) -> Optional[can.Message]:
        """Receive one frame, or None if nothing arrived within timeout."""
        bus = self._require_bus()
        try:
            message = bus.recv(timeout=timeout)
        except (can.CanError, OSError) as e:
            raise CANTransportError(f"Failed to receive frame: {e}") from e
        if message is not None:
            logger.debug("RX %08X %s", message.arbitration_id, bytes(message.data).hex(" "))
        return message

    def frames(self, idle_timeout: Optional[float] = None) -> Iterator[Optional[can.Message]]:
        """
        Yield inbound frames forever.

        With an idle_timeout, None is yielded each time no frame arrived
        within that many seconds. Without one, receiving blocks.
        """
        while True:
            yield self.recv(timeout=idle_timeout)


def list_interfaces() -> List[Dict[str, Any]]:
    """Channels python-can can find on this machine (may be empty)."""
    try:
        return list(can.detect_available_configs())
    except (can.CanError, OSError) as e:
        logger.warning("Interface detection failed: %s", e)
        return []
