"""Typed shapes for extraction payloads and their merge rule.

``Document.extraction_data`` and ``Intake.aggregated_extraction_data`` are
stored as JSON, but every read and write goes through the models below so the
shape is fixed: five sections (contact, shipment, vehicle, cargo, route) of
optional leaf fields.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

SECTIONS = ("contact", "shipment", "vehicle", "cargo", "route")


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_partial(cls, payload: Any) -> "_Section":
        """Validate *payload*, dropping fields that fail coercion instead of rejecting the section."""
        if isinstance(payload, _Section):
            return payload
        if not isinstance(payload, dict):
            return cls()
        data = dict(payload)
        while True:
            try:
                return cls.model_validate(data)
            except ValidationError as exc:
                bad = {err["loc"][0] for err in exc.errors() if err.get("loc")}
                bad &= set(data)
                if not bad:
                    logger.warning(f"Discarding unparseable {cls.__name__} payload: {exc}")
                    return cls()
                logger.debug(f"Dropping invalid {cls.__name__} fields: {sorted(bad)}")
                for key in bad:
                    data.pop(key, None)


class Dimensions(_Section):
    length_m: Optional[float] = None
    width_m: Optional[float] = None
    height_m: Optional[float] = None


class ContactInfo(_Section):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None


class ShipmentInfo(_Section):
    origin: Optional[str] = None
    destination: Optional[str] = None
    shipping_type: Optional[str] = None  # "roro", "container", ...
    container_size: Optional[str] = None  # "20ft", "40ft", "40hc"
    destination_options: List[str] = Field(default_factory=list)


class VehicleInfo(_Section):
    vin: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    type: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    color: Optional[str] = None
    condition: Optional[str] = None
    engine_cc: Optional[int] = None
    weight_kg: Optional[float] = None
    mileage_km: Optional[int] = None
    dimensions: Optional[Dimensions] = None


class CargoInfo(_Section):
    description: Optional[str] = None
    quantity: Optional[int] = None
    weight_kg: Optional[float] = None
    volume_cbm: Optional[float] = None
    dimensions: Optional[Dimensions] = None


class RouteInfo(_Section):
    origin_port: Optional[str] = None
    destination_port: Optional[str] = None
    via: Optional[str] = None


class ExtractionData(BaseModel):
    contact: ContactInfo = Field(default_factory=ContactInfo)
    shipment: ShipmentInfo = Field(default_factory=ShipmentInfo)
    vehicle: VehicleInfo = Field(default_factory=VehicleInfo)
    cargo: CargoInfo = Field(default_factory=CargoInfo)
    route: RouteInfo = Field(default_factory=RouteInfo)

    @property
    def shipping(self) -> ShipmentInfo:
        return self.shipment

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "ExtractionData":
        """Build from a loosely shaped dict (AI output or a stored JSON column).

        ``shipping`` is accepted as an alias of ``shipment``; unknown sections
        are ignored.
        """
        payload = payload or {}
        shipment = payload.get("shipment")
        if not shipment and payload.get("shipping"):
            shipment = payload["shipping"]
        vehicle = payload.get("vehicle")
        if isinstance(vehicle, dict) and vehicle.get("dimensions") is not None:
            vehicle = {**vehicle, "dimensions": Dimensions.from_partial(vehicle["dimensions"])}
        cargo = payload.get("cargo")
        if isinstance(cargo, dict) and cargo.get("dimensions") is not None:
            cargo = {**cargo, "dimensions": Dimensions.from_partial(cargo["dimensions"])}
        return cls(
            contact=ContactInfo.from_partial(payload.get("contact")),
            shipment=ShipmentInfo.from_partial(shipment),
            vehicle=VehicleInfo.from_partial(vehicle),
            cargo=CargoInfo.from_partial(cargo),
            route=RouteInfo.from_partial(payload.get("route")),
        )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    def is_empty(self) -> bool:
        return all(is_empty_value(getattr(self, section)) for section in SECTIONS)


class ExtractionMetadata(BaseModel):
    method: str
    confidence: float
    timestamp: str


class ExtractionResult(BaseModel):
    data: ExtractionData
    metadata: ExtractionMetadata


class Fingerprint(BaseModel):
    model_config = ConfigDict(frozen=True)

    message_id: Optional[str] = None
    content_sha: str


class SourceEntry(BaseModel):
    document_id: int
    filename: str
    type: str
    priority: int


class AggregationMetadata(BaseModel):
    sources: List[SourceEntry] = Field(default_factory=list)
    confidence: float = 0.0


class AggregatedRecord(ExtractionData):
    # No timestamp: re-aggregating the same documents yields identical output.
    metadata: AggregationMetadata = Field(default_factory=AggregationMetadata)


# ---------------------------------------------------------------------------
# Fill-only-if-empty merge
# ---------------------------------------------------------------------------


def is_empty_value(value: Any) -> bool:
    """``None``, empty strings/collections and models with no populated fields are empty. ``0`` is not."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict, tuple, set)):
        return len(value) == 0
    if isinstance(value, BaseModel):
        return all(is_empty_value(getattr(value, name)) for name in type(value).model_fields)
    return False


def merge_if_empty(target: BaseModel, source: BaseModel) -> BaseModel:
    """Return a copy of *target* with empty leaves filled from *source*.

    Nested models are merged key by key, so a partial object in *target*
    can still be completed by non-conflicting keys in *source*. A non-empty
    value in *target* is never replaced.
    """
    updates: Dict[str, Any] = {}
    for name in type(target).model_fields:
        current = getattr(target, name)
        incoming = getattr(source, name, None)
        if is_empty_value(incoming):
            continue
        if isinstance(current, BaseModel) and isinstance(incoming, BaseModel):
            updates[name] = merge_if_empty(current, incoming)
        elif is_empty_value(current):
            updates[name] = incoming.model_copy(deep=True) if isinstance(incoming, BaseModel) else incoming
    return target.model_copy(update=updates)
