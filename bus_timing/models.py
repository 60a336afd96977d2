"""Schemas for the LTA DataMall payloads relayed by the proxy."""

from datetime import datetime
from typing import Any, ClassVar, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class _Upstream(BaseModel):
    # DataMall field names are PascalCase; unknown fields are tolerated.
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    _text_fields: ClassVar[Tuple[str, ...]] = ()

    @field_validator("*", mode="before")
    @classmethod
    def _blank_is_missing(cls, value: Any, info: ValidationInfo) -> Any:
        if info.field_name in cls._text_fields:
            return value or ""
        # Absent slots come back with every field set to "".
        if isinstance(value, str) and not value.strip():
            return None
        return value


class NextBus(_Upstream):
    """One predicted arrival slot for a service."""

    estimated_arrival: Optional[datetime] = Field(default=None, alias="EstimatedArrival")
    load: Optional[str] = Field(default=None, alias="Load")
    type: Optional[str] = Field(default=None, alias="Type")
    feature: Optional[str] = Field(default=None, alias="Feature")
    origin_code: Optional[str] = Field(default=None, alias="OriginCode")
    destination_code: Optional[str] = Field(default=None, alias="DestinationCode")
    monitored: Optional[int] = Field(default=None, alias="Monitored")
    visit_number: Optional[str] = Field(default=None, alias="VisitNumber")
    latitude: Optional[float] = Field(default=None, alias="Latitude")
    longitude: Optional[float] = Field(default=None, alias="Longitude")


class Service(_Upstream):
    service_no: str = Field(alias="ServiceNo")
    operator: Optional[str] = Field(default=None, alias="Operator")
    next_bus: Optional[NextBus] = Field(default=None, alias="NextBus")
    next_bus2: Optional[NextBus] = Field(default=None, alias="NextBus2")
    next_bus3: Optional[NextBus] = Field(default=None, alias="NextBus3")

    @property
    def slots(self) -> List[Optional[NextBus]]:
        return [self.next_bus, self.next_bus2, self.next_bus3]

    @property
    def upcoming(self) -> List[NextBus]:
        """Slots that carry an estimated arrival, in order."""
        return [slot for slot in self.slots if slot is not None and slot.estimated_arrival is not None]


class BusArrivalResponse(_Upstream):
    bus_stop_code: str = Field(alias="BusStopCode")
    services: List[Service] = Field(default_factory=list, alias="Services")
    is_demo: bool = Field(default=False, alias="_isDemo")

    def service(self, service_no: str) -> Optional[Service]:
        for service in self.services:
            if service.service_no == service_no:
                return service
        return None


class StopDirectoryEntry(_Upstream):
    _text_fields: ClassVar[Tuple[str, ...]] = ("description", "road_name")

    bus_stop_code: str = Field(alias="BusStopCode")
    description: str = Field(default="", alias="Description")
    road_name: str = Field(default="", alias="RoadName")
    latitude: float = Field(alias="Latitude")
    longitude: float = Field(alias="Longitude")


class StopsPage(_Upstream):
    value: List[StopDirectoryEntry] = Field(default_factory=list)


class NearbyStop(BaseModel):
    stop: StopDirectoryEntry
    dist_sq: float
    distance: int  # metres


class Favorite(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stop_code: str = Field(alias="stopCode")
    service_no: str = Field(alias="serviceNo")
    timestamp: int  # epoch ms when pinned

    @property
    def key(self) -> str:
        return f"{self.stop_code}_{self.service_no}"
