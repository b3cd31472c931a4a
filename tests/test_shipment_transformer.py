"""
Tests for the record transformer: carrier/service normalisation, carton
size classification and full row construction.

Pure functions, no database or network.
"""
from datetime import datetime

import pytest

from shipsync.services.reference_data import build_reference_maps
from shipsync.services.run_config import CartonSizeThresholds, RunConfig
from shipsync.services.shipment_transformer import (
    EXPORT_HEADERS,
    SOURCE_FULFILLMENT,
    clean_service,
    get_carton_size,
    normalize_carrier,
    transform_shipment,
)

from fakes import make_shipment


WAREHOUSES = [
    ["Warehouse ID", "Warehouse Name", "Client ID", "Client Emails", "CC Emails", "Notes", "Markup %"],
    ["11", "[ACM] Acme Dallas", "ACM", "", "", "", "10"],
    ["12", "Shared Floor", "", "", "", "", "default"],
]
STORES = [
    ["Store ID", "Store Name", "Client ID"],
    ["21", "Acme Shopify", ""],
    ["22", "Metscube Amazon", ""],
]


@pytest.fixture
def maps():
    return build_reference_maps(WAREHOUSES, STORES)


@pytest.fixture
def config():
    return RunConfig(global_markup=5.0)


# ────────────────────────────────────────────
# CARRIER / SERVICE
# ────────────────────────────────────────────


class TestNormalizeCarrier:

    @pytest.mark.parametrize("code,expected", [
        ("stamps_com", "USPS"),
        ("usps", "USPS"),
        ("ups_walleted", "UPS"),
        ("UPS", "UPS"),
        ("fedex", "FedEx"),
        ("dhl_express_worldwide", "DHL"),
        ("ontrac", "OTHER"),
        ("", "OTHER"),
        (None, "OTHER"),
    ])
    def test_known_and_unknown_carriers(self, code, expected):
        assert normalize_carrier(code) == expected


class TestCleanService:

    def test_drops_carrier_prefix_and_capitalises(self):
        assert clean_service("usps_priority_mail") == "Priority Mail"

    def test_single_segment_becomes_empty(self):
        assert clean_service("ground") == ""

    def test_empty(self):
        assert clean_service("") == ""
        assert clean_service(None) == ""


# ────────────────────────────────────────────
# CARTON SIZE
# ────────────────────────────────────────────


class TestCartonSize:

    def test_missing_dimension_gives_empty(self):
        assert get_carton_size(10, 0, 5) == ""
        assert get_carton_size(None, 5, 5) == ""

    def test_poly_mailer_without_dimensions_is_unsized(self):
        assert get_carton_size(0, 0, 0, "Poly Mailer") == ""
        assert get_carton_size(None, None, None, "POLYMAILER") == ""

    def test_bounds_are_inclusive(self):
        # 7 x 10 x 5 = 350
        assert get_carton_size(7, 10, 5) == "S"
        # 351
        assert get_carton_size(351, 1, 1) == "M"
        assert get_carton_size(10, 10, 10) == "M"
        assert get_carton_size(35, 10, 10) == "L"
        assert get_carton_size(36, 10, 10) == "XL"

    @pytest.mark.parametrize("package_type", ["Poly Mailer", "POLYMAILER", "poly-mailer 10x13"])
    def test_poly_mailer_variants(self, package_type):
        assert get_carton_size(30, 30, 30, package_type) == "PM"

    def test_double_wall_bumps_one_tier(self):
        assert get_carton_size(5, 5, 5, "DW Box") == "M"
        assert get_carton_size(10, 10, 10, "dw box") == "L"

    def test_double_wall_xl_stays_xl(self):
        assert get_carton_size(50, 50, 50, "DW") == "XL"

    def test_custom_thresholds(self):
        thresholds = CartonSizeThresholds(s_max=100, m_max=200, l_max=300)
        assert get_carton_size(5, 5, 5, "", thresholds) == "M"


# ────────────────────────────────────────────
# FULL ROW
# ────────────────────────────────────────────


class TestTransformShipment:

    def test_row_has_every_column(self, maps, config):
        row = transform_shipment(make_shipment(1, datetime(2026, 1, 5, 9, 30)), maps, config)
        values = row.to_values()
        assert len(values) == len(EXPORT_HEADERS) == 25

    def test_field_mapping(self, maps, config):
        record = make_shipment(
            7,
            datetime(2026, 1, 5, 9, 30, 15),
            voided=True,
            shipmentCost=20.0,
            weight={"value": 2, "units": "pounds"},
            shipmentItems=[{"quantity": 2}, {"quantity": 3}],
        )
        row = transform_shipment(record, maps, config)

        assert row.create_date == "2026-01-05 09:30:15"
        assert row.ship_date == "2026-01-05"
        assert row.order_number == "ORD-7"
        assert row.carrier == "UPS"
        assert row.service == "Ground"
        assert row.store_id == "21"
        assert row.store_name == "Acme Shopify"
        assert row.warehouse_name == "[ACM] Acme Dallas"
        assert row.shipping_cost == 20.0
        assert row.billing_cost == 22.0  # warehouse override 10%
        assert row.voided == "YES"
        assert row.items_count == 5
        assert row.weight_oz == 32.0
        assert row.dimensions == "5x5x5 inches"
        assert row.carton_size == "S"
        assert row.source_type == "Shipment"
        assert row.shipment_id == "100007"
        assert row.client_id == "ACM"

    def test_client_id_is_not_a_column(self, maps, config):
        row = transform_shipment(make_shipment(1, datetime(2026, 1, 5)), maps, config)
        assert "ACM" not in row.to_values()

    def test_default_markup_uses_global(self, maps, config):
        record = make_shipment(2, datetime(2026, 1, 5), warehouseId=12, shipmentCost=10.0)
        row = transform_shipment(record, maps, config)
        assert row.billing_cost == 10.5

    def test_free_shipment_bills_zero(self, maps, config):
        record = make_shipment(3, datetime(2026, 1, 5), shipmentCost=0)
        assert transform_shipment(record, maps, config).billing_cost == 0

    def test_bad_numbers_become_zero(self, maps, config):
        record = make_shipment(4, datetime(2026, 1, 5), shipmentCost="n/a", insuranceCost=None, weight=None)
        row = transform_shipment(record, maps, config)
        assert row.shipping_cost == 0
        assert row.insurance_cost == 0
        assert row.weight_oz == 0

    def test_grams_convert_to_ounces(self, maps, config):
        record = make_shipment(5, datetime(2026, 1, 5), weight={"value": 283.495, "units": "grams"})
        assert transform_shipment(record, maps, config).weight_oz == 10.0

    def test_deterministic(self, maps, config):
        record = make_shipment(6, datetime(2026, 1, 5))
        assert transform_shipment(record, maps, config) == transform_shipment(record, maps, config)

    def test_input_not_mutated(self, maps, config):
        record = make_shipment(8, datetime(2026, 1, 5))
        snapshot = repr(record)
        transform_shipment(record, maps, config)
        assert repr(record) == snapshot

    def test_fulfillment_fields(self, maps, config):
        record = {
            "fulfillmentId": 9001,
            "orderNumber": "ACM-555",
            "createDate": "2026-01-06T10:00:00.0000000",
            "shipDate": "2026-01-06T00:00:00.0000000",
            "carrierCode": "fedex",
            "fulfillmentServiceCode": "fedex_home_delivery",
            "fulfillmentFee": 7.5,
            "trackingNumber": "FX1",
        }
        row = transform_shipment(record, maps, config, source_type=SOURCE_FULFILLMENT)
        assert row.shipment_id == "9001"
        assert row.source_type == "Fulfillment"
        assert row.carrier == "FedEx"
        assert row.service == "Home Delivery"
        assert row.billing_cost == round(7.5 * 1.05, 2)
        assert row.client_id == "UNKNOWN"
