"""Enumerate serial devices attached to the host."""

from __future__ import annotations

from typing import Callable, Iterable

import structlog
from anyio import to_thread
from serial.tools import list_ports
from serial.tools.list_ports_common import ListPortInfo

from ..core.errors import Internal
from ..domain.devices import SerialPortInfo

logger = structlog.get_logger(__name__)

PortLister = Callable[[], Iterable[ListPortInfo]]


def _to_domain(port: ListPortInfo) -> SerialPortInfo:
    return SerialPortInfo(
        path=port.device,
        manufacturer=port.manufacturer,
        serial_number=port.serial_number,
    )


async def list_serial_ports(lister: PortLister = list_ports.comports) -> list[SerialPortInfo]:
    """Return every serial port pyserial can see; enumeration runs in a worker thread."""

    try:
        ports = await to_thread.run_sync(lambda: list(lister()))
    except Exception as exc:
        logger.exception("ports.list_failed")
        raise Internal("Failed to list ports") from exc
    return [_to_domain(port) for port in ports]
