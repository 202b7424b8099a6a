from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class SerialPortInfo(BaseModel):
    """A serial device visible to the host."""

    model_config = ConfigDict(populate_by_name=True)

    path: str
    manufacturer: str | None = None
    serial_number: str | None = Field(default=None, alias="serialNumber")


class PortsResponse(BaseModel):
    ok: bool = True
    ports: list[SerialPortInfo]
