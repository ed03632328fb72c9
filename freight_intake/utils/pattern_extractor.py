"""Regex-based extraction of shipment fields from free text.

Used when AI extraction is disabled, unavailable or rate limited.  Every
function here is pure: text in, values out, no I/O.  The entry point is
:func:`extract_patterns`, which returns an
:class:`~freight_intake.schemas.ExtractionData`.

Coverage: VIN, model year, make/model for common brands, heavy equipment
types, fuel, transmission, colour, condition, engine size, dimensions,
weight, mileage; routes in English, German, French and Dutch phrasing plus
labelled origin/destination and POL/POD; RoRo vs container shipping; contact
email, phone, display name and company.
"""

import re
from datetime import date
from typing import Dict, List, Optional, Tuple

from freight_intake.schemas import (
    CargoInfo,
    ContactInfo,
    Dimensions,
    ExtractionData,
    RouteInfo,
    ShipmentInfo,
    VehicleInfo,
)

# ---------------------------------------------------------------------------
# Vehicle patterns
# ---------------------------------------------------------------------------

VIN = re.compile(r"\b([A-HJ-NPR-Z0-9]{17})\b")
YEAR = re.compile(r"\b((?:19|20)\d{2})\b")
MODEL_YEAR = re.compile(r"\b(?:model(?:\s+year)?|year|bouwjaar|baujahr|ann[ée]e)\s*[:=]?\s*((?:19|20)\d{2})\b", re.I)
ENGINE_CC = re.compile(r"(\d{3,4})\s*(?:cc|cm³|ccm)\b", re.I)
DIMENSIONS = re.compile(
    r"(\d+(?:[.,]\d+)?)\s*(m|cm|mm)?\s*[x×*]\s*(\d+(?:[.,]\d+)?)\s*(m|cm|mm)?\s*[x×*]\s*(\d+(?:[.,]\d+)?)\s*(m|cm|mm|meters?)?\b",
    re.I,
)
DIMENSIONS_LABELED = {
    "length_m": re.compile(r"\b(?:length|lengte|länge|L)\s*[:=]?\s*(\d+(?:[.,]\d+)?)\s*(m|cm|mm)\b", re.I),
    "width_m": re.compile(r"\b(?:width|breedte|breite|W|B)\s*[:=]?\s*(\d+(?:[.,]\d+)?)\s*(m|cm|mm)\b", re.I),
    "height_m": re.compile(r"\b(?:height|hoogte|höhe|H)\s*[:=]?\s*(\d+(?:[.,]\d+)?)\s*(m|cm|mm)\b", re.I),
}
WEIGHT_KG = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:kg|kilos?|kilograms?)\b", re.I)
WEIGHT_LBS = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:lbs?|pounds)\b", re.I)
WEIGHT_TONS = re.compile(r"(\d+(?:[.,]\d+)?)\s*(?:tons?|tonnes?|t)\b", re.I)
MILEAGE_KM = re.compile(r"(\d[\d,.]*)\s*(?:km|kilometers?|kilometres?)\b", re.I)
MILEAGE_MILES = re.compile(r"(\d[\d,.]*)\s*(?:miles?|mi)\b", re.I)
FUEL = re.compile(r"\b(diesel|petrol|gasoline|benzine|electric|hybrid|lpg|cng)\b", re.I)
TRANSMISSION = re.compile(r"\b(automatic|manual|auto|cvt)\b", re.I)
CONDITION = re.compile(r"\b(new|used|pre[\s-]?owned|second[\s-]?hand|damaged|accident|salvage)\b", re.I)
COLOR = re.compile(
    r"\b(black|white|silver|grey|gray|red|blue|green|yellow|orange|brown|beige|gold|bronze|purple)\b", re.I
)

BRANDS = {
    "bmw": "BMW",
    "mercedes-benz": "Mercedes-Benz",
    "mercedes": "Mercedes-Benz",
    "audi": "Audi",
    "toyota": "Toyota",
    "honda": "Honda",
    "ford": "Ford",
    "volkswagen": "Volkswagen",
    "vw": "Volkswagen",
    "nissan": "Nissan",
    "lexus": "Lexus",
    "bentley": "Bentley",
    "porsche": "Porsche",
    "volvo": "Volvo",
    "peugeot": "Peugeot",
    "renault": "Renault",
    "hyundai": "Hyundai",
    "kia": "Kia",
    "mazda": "Mazda",
    "jeep": "Jeep",
    "land rover": "Land Rover",
    "caterpillar": "Caterpillar",
}
_BRAND_MODEL = re.compile(
    r"\b(" + "|".join(sorted((re.escape(b) for b in BRANDS), key=len, reverse=True)) + r")[\s-]+([A-Z0-9][\w-]*)",
    re.I,
)
_MODEL_STOPWORDS = {"from", "to", "de", "vers", "van", "naar", "ab", "nach", "for", "with", "and", "in", "on"}

EQUIPMENT_TYPES: List[Tuple[re.Pattern, str, str]] = [
    (re.compile(r"motor\s*grader", re.I), "Motorgrader", "heavy_equipment"),
    (re.compile(r"excavator", re.I), "Excavator", "heavy_equipment"),
    (re.compile(r"bulldozer", re.I), "Bulldozer", "heavy_equipment"),
    (re.compile(r"wheel\s*loader", re.I), "Wheel Loader", "heavy_equipment"),
    (re.compile(r"crane", re.I), "Crane", "heavy_equipment"),
    (re.compile(r"dump\s*truck", re.I), "Dump Truck", "commercial_vehicle"),
    (re.compile(r"\btruck\b", re.I), "Truck", "commercial_vehicle"),
    (re.compile(r"forklift", re.I), "Forklift", "warehouse_equipment"),
    (re.compile(r"tractor", re.I), "Tractor", "agricultural"),
    (re.compile(r"caravan|camper|motorhome", re.I), "Caravan", "recreational"),
]

# ---------------------------------------------------------------------------
# Shipping patterns
# ---------------------------------------------------------------------------

_PLACE = r"[A-Za-zÀ-ÿ\s,\-\.]+?"
_FLAGS = re.I | re.M

DESTINATION_OPTIONS = re.compile(rf"\bto\s+({_PLACE})\s+or\s+({_PLACE})(?:[.,;\n]|$)", _FLAGS)
DESTINATION_OPTIONS_GERMAN = re.compile(rf"\bnach\s+({_PLACE})\s+oder\s+({_PLACE})(?:[.,;\n]|$)", _FLAGS)
ORIGIN_GERMAN = re.compile(rf"\bab\s+({_PLACE})\s+nach\b", _FLAGS)
ROUTES = [
    re.compile(rf"\bfrom\s+({_PLACE})\s+to\s+({_PLACE})(?:[.,;]|\s+(?:incl|including|with)\b|$)", _FLAGS),
    re.compile(rf"\bab\s+({_PLACE})\s+nach\s+({_PLACE})(?:[.,;]|\s|$)", _FLAGS),
    re.compile(rf"\bde\s+({_PLACE})\s+vers\s+({_PLACE})(?:[.,;]|\s+par\b|\s|$)", _FLAGS),
    re.compile(rf"\b(?:vanaf|van)\s+({_PLACE})\s+naar\s+({_PLACE})(?:\s+(?:incl|inclusief|met)\b|[.,;]|$)", _FLAGS),
]
ORIGIN_LABEL = re.compile(r"\b(?:origin|loading|pickup|departure)\s*:\s*([A-Za-zÀ-ÿ\s\-\.]+?)\s*(?:[.,;\n]|$)", _FLAGS)
DESTINATION_LABEL = re.compile(
    r"\b(?:destination|delivery|discharge|arrival)\s*:\s*([A-Za-zÀ-ÿ\s\-\.]+?)\s*(?:[.,;\n]|$)", _FLAGS
)
POL = re.compile(r"\bPOL\s*:\s*([A-Za-zÀ-ÿ\s\-\.]+?)\s*(?:[.,;\n(]|$)", _FLAGS)
POD = re.compile(r"\bPOD\s*:\s*([A-Za-zÀ-ÿ\s\-\.]+?)\s*(?:[.,;\n(]|$)", _FLAGS)
RORO = re.compile(r"\b(ro[\s-]?ro|roll[\s-]?on[\s-]?roll[\s-]?off)\b", re.I)
CONTAINER_40HC = re.compile(r"\b40\s*'?\s*(?:ft\s*)?(?:hc|high[\s-]?cube)\b", re.I)
CONTAINER_40 = re.compile(r"\b40\s*(?:ft|feet|')\s*(?:container|ctr)?\b", re.I)
CONTAINER_20 = re.compile(r"\b20\s*(?:ft|feet|')\s*(?:container|ctr)?\b", re.I)
CONTAINER_GENERIC = re.compile(r"\bcontainer\b", re.I)

# ---------------------------------------------------------------------------
# Contact patterns
# ---------------------------------------------------------------------------

EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_INTERNATIONAL = re.compile(r"\+\d{1,3}[\s\-.]?\(?\d{1,4}\)?(?:[\s\-.]?\d{2,4}){2,4}")
PHONE_LABELED = re.compile(r"\b(?:tel|phone|mobile|gsm)\.?\s*[:=]?\s*(\+?[\d\s\-./()]{8,20}\d)", re.I)
NAME_WITH_EMAIL = re.compile(r"^\s*\"?([^\"<>\n]+?)\"?\s*<([^<>\s]+@[^<>\s]+)>\s*$", re.M)
FREEMAIL_DOMAINS = {"gmail", "googlemail", "yahoo", "hotmail", "outlook", "live", "icloud", "aol", "gmx", "proton"}

_VEHICLE_CONTEXT = ("model", "year", "vehicle", "car", "auto", "manufactured", "built", "bouwjaar", "baujahr")
_DOCUMENT_DATE_CONTEXT = ("date", "invoice", "due", "created", "issued", "sent")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_float(value: str) -> Optional[float]:
    value = value.strip()
    # "18.750" is a thousands separator, "1,8" a decimal comma
    if re.fullmatch(r"\d{1,3}(?:\.\d{3})+", value):
        value = value.replace(".", "")
    else:
        value = value.replace(",", ".")
    try:
        return float(value)
    except ValueError:
        return None


def _to_meters(value: float, unit: Optional[str]) -> float:
    unit = (unit or "").lower()
    if unit == "cm":
        return round(value / 100, 3)
    if unit == "mm":
        return round(value / 1000, 3)
    if not unit and value > 30:
        # Unit-less values this large are centimetres
        return round(value / 100, 3)
    return round(value, 3)


def _clean_place(value: str) -> Optional[str]:
    value = re.sub(r"\s+", " ", value).strip(" ,.-")
    return value or None


def _standardize_fuel(fuel: str) -> str:
    fuel = fuel.lower()
    if fuel in ("benzine", "gasoline"):
        return "petrol"
    return fuel


def _standardize_transmission(value: str) -> str:
    value = value.lower()
    if value in ("auto", "automatic"):
        return "automatic"
    return value


def _standardize_condition(value: str) -> str:
    value = value.lower()
    if value == "new":
        return "new"
    if value in ("damaged", "accident", "salvage"):
        return "damaged"
    return "used"


# ---------------------------------------------------------------------------
# Section extractors
# ---------------------------------------------------------------------------


def extract_year(text: str) -> Optional[int]:
    labelled = MODEL_YEAR.search(text)
    if labelled:
        return int(labelled.group(1))

    max_year = date.today().year + 2
    fallback = None
    for match in YEAR.finditer(text):
        year = int(match.group(1))
        if not 1900 <= year <= max_year:
            continue
        context = text[max(0, match.start() - 50) : match.end() + 50].lower()
        if any(keyword in context for keyword in _VEHICLE_CONTEXT):
            return year
        if fallback is None and not any(keyword in context for keyword in _DOCUMENT_DATE_CONTEXT):
            fallback = year
    return fallback


def extract_dimensions(text: str) -> Optional[Dimensions]:
    match = DIMENSIONS.search(text)
    if match:
        unit = match.group(6) or match.group(4) or match.group(2)
        unit = "m" if unit and unit.lower().startswith("meter") else unit
        values = [_to_float(match.group(i)) for i in (1, 3, 5)]
        if all(v is not None for v in values):
            length, width, height = (_to_meters(v, unit) for v in values)
            return Dimensions(length_m=length, width_m=width, height_m=height)

    found: Dict[str, float] = {}
    for field, pattern in DIMENSIONS_LABELED.items():
        labelled = pattern.search(text)
        if labelled:
            value = _to_float(labelled.group(1))
            if value is not None:
                found[field] = _to_meters(value, labelled.group(2))
    return Dimensions(**found) if found else None


def extract_weight_kg(text: str) -> Optional[float]:
    match = WEIGHT_KG.search(text)
    if match:
        return _to_float(match.group(1))
    match = WEIGHT_LBS.search(text)
    if match:
        lbs = _to_float(match.group(1))
        return round(lbs * 0.453592) if lbs is not None else None
    match = WEIGHT_TONS.search(text)
    if match:
        tons = _to_float(match.group(1))
        return round(tons * 1000) if tons is not None else None
    return None


def extract_mileage_km(text: str) -> Optional[int]:
    match = MILEAGE_KM.search(text)
    if match:
        digits = re.sub(r"[,.]", "", match.group(1))
        return int(digits) if digits else None
    match = MILEAGE_MILES.search(text)
    if match:
        digits = re.sub(r"[,.]", "", match.group(1))
        return round(int(digits) * 1.60934) if digits else None
    return None


def extract_vehicle(text: str) -> VehicleInfo:
    vehicle = VehicleInfo()
    updates: Dict[str, object] = {}

    vin = VIN.search(text)
    if vin:
        updates["vin"] = vin.group(1)

    brand = _BRAND_MODEL.search(text)
    if brand:
        updates["brand"] = BRANDS[brand.group(1).lower()]
        model = brand.group(2)
        if model.lower() not in _MODEL_STOPWORDS and not VIN.fullmatch(model):
            updates["model"] = model

    for pattern, equipment_type, category in EQUIPMENT_TYPES:
        if pattern.search(text):
            updates["type"] = equipment_type
            break
    else:
        if "brand" in updates or "vin" in updates:
            updates["type"] = "car"

    year = extract_year(text)
    if year:
        updates["year"] = year

    for key, pattern, normalize in (
        ("fuel_type", FUEL, _standardize_fuel),
        ("transmission", TRANSMISSION, _standardize_transmission),
        ("condition", CONDITION, _standardize_condition),
        ("color", COLOR, str.lower),
    ):
        match = pattern.search(text)
        if match:
            updates[key] = normalize(match.group(1))

    engine = ENGINE_CC.search(text)
    if engine:
        updates["engine_cc"] = int(engine.group(1))

    dimensions = extract_dimensions(text)
    if dimensions:
        updates["dimensions"] = dimensions

    weight = extract_weight_kg(text)
    if weight is not None:
        updates["weight_kg"] = weight

    mileage = extract_mileage_km(text)
    if mileage is not None:
        updates["mileage_km"] = mileage

    return vehicle.model_copy(update=updates)


def extract_shipment(text: str) -> ShipmentInfo:
    origin = destination = None
    options: List[str] = []

    german_options = DESTINATION_OPTIONS_GERMAN.search(text)
    english_options = DESTINATION_OPTIONS.search(text)
    if german_options:
        options = [p for p in (_clean_place(german_options.group(1)), _clean_place(german_options.group(2))) if p]
        origin_match = ORIGIN_GERMAN.search(text)
        origin = _clean_place(origin_match.group(1)) if origin_match else None
    elif english_options:
        options = [p for p in (_clean_place(english_options.group(1)), _clean_place(english_options.group(2))) if p]
    else:
        for pattern in ROUTES:
            match = pattern.search(text)
            if match:
                origin, destination = _clean_place(match.group(1)), _clean_place(match.group(2))
                break
    if options:
        destination = options[0]

    if not origin:
        labelled = ORIGIN_LABEL.search(text)
        origin = _clean_place(labelled.group(1)) if labelled else None
    if not destination:
        labelled = DESTINATION_LABEL.search(text)
        destination = _clean_place(labelled.group(1)) if labelled else None

    shipping_type = container_size = None
    if RORO.search(text):
        shipping_type = "roro"
    elif CONTAINER_40HC.search(text):
        shipping_type, container_size = "container", "40hc"
    elif CONTAINER_40.search(text):
        shipping_type, container_size = "container", "40ft"
    elif CONTAINER_20.search(text):
        shipping_type, container_size = "container", "20ft"
    elif CONTAINER_GENERIC.search(text):
        shipping_type = "container"

    return ShipmentInfo(
        origin=origin,
        destination=destination,
        shipping_type=shipping_type,
        container_size=container_size,
        destination_options=options if len(options) > 1 else [],
    )


def extract_route(text: str) -> RouteInfo:
    pol = POL.search(text)
    pod = POD.search(text)
    return RouteInfo(
        origin_port=_clean_place(pol.group(1)) if pol else None,
        destination_port=_clean_place(pod.group(1)) if pod else None,
    )


def extract_contact(text: str) -> ContactInfo:
    email = name = company = phone = None

    named = NAME_WITH_EMAIL.search(text)
    if named:
        name = named.group(1).strip().strip("\"'")
        email = named.group(2)
    else:
        match = EMAIL.search(text)
        if match:
            email = match.group(0)

    if email:
        domain = email.rsplit("@", 1)[-1].split(".")[0].lower()
        if domain not in FREEMAIL_DOMAINS:
            company = domain.capitalize()

    match = PHONE_INTERNATIONAL.search(text)
    if match:
        phone = re.sub(r"[\s\-().]", "", match.group(0))
    else:
        labelled = PHONE_LABELED.search(text)
        if labelled:
            phone = re.sub(r"[\s\-().]", "", labelled.group(1))

    if name:
        name = re.sub(r"\s+", " ", name).strip().title()

    return ContactInfo(name=name or None, email=email, phone=phone, company=company)


def extract_patterns(text: str) -> ExtractionData:
    """Run every section extractor over *text*."""
    text = text or ""
    vehicle = extract_vehicle(text)
    return ExtractionData(
        contact=extract_contact(text),
        shipment=extract_shipment(text),
        vehicle=vehicle,
        # Cargo only carries what is not already attributed to a vehicle
        cargo=CargoInfo() if vehicle.vin or vehicle.brand else _extract_cargo(text),
        route=extract_route(text),
    )


def _extract_cargo(text: str) -> CargoInfo:
    weight = extract_weight_kg(text)
    dimensions = extract_dimensions(text)
    quantity = re.search(r"\b(\d+)\s*(?:pallets?|pieces?|pcs|packages?|crates?|units?)\b", text, re.I)
    volume = re.search(r"(\d+(?:[.,]\d+)?)\s*(?:cbm|m3|m³)\b", text, re.I)
    return CargoInfo(
        quantity=int(quantity.group(1)) if quantity else None,
        weight_kg=weight,
        volume_cbm=_to_float(volume.group(1)) if volume else None,
        dimensions=dimensions,
    )
