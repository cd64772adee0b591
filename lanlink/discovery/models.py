"""Pydantic models for device discovery."""

from pydantic import BaseModel, Field

from lanlink.config import APP_VERSION


class ServiceRecord(BaseModel):
    """A resolved service advertisement handed over by the discovery layer."""
    name: str
    address: str
    port: int
    txt: dict[str, str] = Field(default_factory=dict)


class Device(BaseModel):
    """Represents a discovered device on the LAN."""
    name: str
    address: str
    port: int
    status: str = "offline"
    advertised_version: str = APP_VERSION
    transfer_port: int = 0  # TCP port of the peer channel listener, 0 if not advertised
