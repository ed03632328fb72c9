"""
Tests for the extraction payload models and the fill-only-if-empty merge.
"""

import pytest

from freight_intake.schemas import (
    ContactInfo,
    Dimensions,
    ExtractionData,
    ShipmentInfo,
    VehicleInfo,
    is_empty_value,
    merge_if_empty,
)


@pytest.mark.unit
class TestIsEmptyValue:
    @pytest.mark.parametrize("value", [None, "", "   ", [], {}, ContactInfo(), Dimensions()])
    def test_empty_values(self, value):
        assert is_empty_value(value) is True

    @pytest.mark.parametrize("value", [0, 0.0, False, "x", ["a"], {"k": 1}, ContactInfo(name="A")])
    def test_non_empty_values(self, value):
        assert is_empty_value(value) is False


@pytest.mark.unit
class TestFromPayload:
    def test_shipping_alias_is_read_into_shipment(self):
        data = ExtractionData.from_payload({"shipping": {"origin": "Antwerp", "destination": "Lagos"}})
        assert data.shipment.origin == "Antwerp"
        assert data.shipping.destination == "Lagos"

    def test_shipment_wins_over_shipping_alias(self):
        data = ExtractionData.from_payload({"shipment": {"origin": "Hamburg"}, "shipping": {"origin": "Antwerp"}})
        assert data.shipment.origin == "Hamburg"

    def test_invalid_field_is_dropped_not_the_section(self):
        data = ExtractionData.from_payload({"vehicle": {"brand": "Toyota", "year": "next spring"}})
        assert data.vehicle.brand == "Toyota"
        assert data.vehicle.year is None

    def test_numeric_strings_are_coerced(self):
        data = ExtractionData.from_payload({"vehicle": {"year": "2019", "weight_kg": "1500.5"}})
        assert data.vehicle.year == 2019
        assert data.vehicle.weight_kg == 1500.5

    def test_partial_dimensions_survive(self):
        data = ExtractionData.from_payload({"vehicle": {"dimensions": {"length_m": 4.5, "width_m": "wide"}}})
        assert data.vehicle.dimensions.length_m == 4.5
        assert data.vehicle.dimensions.width_m is None

    def test_unknown_sections_and_non_dict_sections_are_ignored(self):
        data = ExtractionData.from_payload({"pricing": {"amount": 1}, "contact": "not a dict"})
        assert data.is_empty()

    def test_none_payload(self):
        assert ExtractionData.from_payload(None).is_empty()

    def test_to_payload_omits_none(self):
        payload = ExtractionData(vehicle=VehicleInfo(vin="1HGCM82633A123456")).to_payload()
        assert payload["vehicle"] == {"vin": "1HGCM82633A123456"}
        assert payload["contact"] == {}


@pytest.mark.unit
class TestMergeIfEmpty:
    def test_existing_value_is_never_replaced(self):
        target = ExtractionData(contact=ContactInfo(email="first@example.com"))
        source = ExtractionData(contact=ContactInfo(email="second@example.com", phone="+32 3 123 45 67"))
        merged = merge_if_empty(target, source)
        assert merged.contact.email == "first@example.com"
        assert merged.contact.phone == "+32 3 123 45 67"

    def test_blank_string_is_filled(self):
        merged = merge_if_empty(ShipmentInfo(origin=""), ShipmentInfo(origin="Antwerp"))
        assert merged.origin == "Antwerp"

    def test_zero_is_kept(self):
        merged = merge_if_empty(VehicleInfo(mileage_km=0), VehicleInfo(mileage_km=120000))
        assert merged.mileage_km == 0

    def test_nested_objects_merge_key_by_key(self):
        target = VehicleInfo(dimensions=Dimensions(length_m=4.5))
        source = VehicleInfo(dimensions=Dimensions(length_m=5.0, width_m=1.8, height_m=1.5))
        merged = merge_if_empty(target, source)
        assert merged.dimensions == Dimensions(length_m=4.5, width_m=1.8, height_m=1.5)

    def test_empty_list_is_filled(self):
        merged = merge_if_empty(ShipmentInfo(), ShipmentInfo(destination_options=["Lagos", "Cotonou"]))
        assert merged.destination_options == ["Lagos", "Cotonou"]

    def test_inputs_are_not_mutated(self):
        target = ExtractionData()
        source = ExtractionData(vehicle=VehicleInfo(dimensions=Dimensions(length_m=4.5)))
        merged = merge_if_empty(target, source)
        merged.vehicle.dimensions.length_m = 9.9
        assert target.vehicle.dimensions is None
        assert source.vehicle.dimensions.length_m == 4.5
