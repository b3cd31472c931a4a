"""
Record Transformer

Turns one raw ShipStation shipment (or fulfillment) payload into an
ExportRow. Pure: the same payload, reference maps and RunConfig always give
the same row.
"""
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from shipsync.services.reference_data import (
    ReferenceMaps,
    ShipmentContext,
    calculate_billing_cost,
    resolve_client_id,
    warehouse_markup,
)
from shipsync.services.run_config import DEFAULT_CARTON_THRESHOLDS, CartonSizeThresholds, RunConfig
from shipsync.utils.helpers import parse_timestamp, safe_get, to_float, to_key

SOURCE_SHIPMENT = "Shipment"
SOURCE_FULFILLMENT = "Fulfillment"

EXPORT_HEADERS = [
    "Create Date", "Order Number", "Order ID", "Ship To Name", "Tracking Number",
    "Carrier", "Service", "Ship Date", "Store ID", "Batch ID", "Shipping Cost",
    "Warehouse ID", "Warehouse Name", "Billing Cost", "Store Name", "Voided",
    "Shipment ID", "Is Return Label", "Insurance Cost", "Items Count", "Source Type",
    "Weight (oz)", "Package Type", "Dimensions", "Carton Size",
]

VOIDED_COLUMN = EXPORT_HEADERS.index("Voided")
SHIPMENT_ID_COLUMN = EXPORT_HEADERS.index("Shipment ID")
SOURCE_TYPE_COLUMN = EXPORT_HEADERS.index("Source Type")

# (token, carrier) in priority order; first substring hit wins
CARRIER_TOKENS = (
    ("usps", "USPS"),
    ("stamps", "USPS"),
    ("ups", "UPS"),
    ("fedex", "FedEx"),
    ("dhl", "DHL"),
)

CARTON_TIERS = ("S", "M", "L", "XL")
POLY_MAILER = "PM"

OUNCES_PER_UNIT = {
    "ounces": 1.0,
    "ounce": 1.0,
    "oz": 1.0,
    "pounds": 16.0,
    "pound": 16.0,
    "lb": 16.0,
    "lbs": 16.0,
    "grams": 1 / 28.349523125,
    "gram": 1 / 28.349523125,
    "g": 1 / 28.349523125,
}


@dataclass(frozen=True)
class ExportRow:
    """
    One row of the export tab. Field order is the column order.

    client_id is resolved alongside the row but is not written as a column.
    """
    create_date: str
    order_number: str
    order_id: str
    ship_to_name: str
    tracking_number: str
    carrier: str
    service: str
    ship_date: str
    store_id: str
    batch_id: str
    shipping_cost: float
    warehouse_id: str
    warehouse_name: str
    billing_cost: float
    store_name: str
    voided: str
    shipment_id: str
    is_return_label: str
    insurance_cost: float
    items_count: int
    source_type: str
    weight_oz: float
    package_type: str
    dimensions: str
    carton_size: str
    client_id: str = ""
    sort_key: str = ""  # raw createDate, used for checkpoint ordering

    def to_values(self) -> List[Any]:
        return [getattr(self, f.name) for f in fields(self)][:len(EXPORT_HEADERS)]

    @property
    def is_voided(self) -> bool:
        return str(self.voided).upper() == "YES"

    @property
    def dedupe_key(self) -> tuple:
        return (self.source_type, self.shipment_id)


def normalize_carrier(carrier: Optional[str]) -> str:
    if not carrier:
        return "OTHER"
    lower = str(carrier).lower()
    for token, name in CARRIER_TOKENS:
        if token in lower:
            return name
    return "OTHER"


def clean_service(service_code: Optional[str]) -> str:
    """'usps_priority_mail' -> 'Priority Mail'"""
    if not service_code:
        return ""
    parts = str(service_code).split("_")[1:]
    return " ".join(word[:1].upper() + word[1:] for word in parts)


def _is_poly_mailer(package_type: str) -> bool:
    squashed = package_type.lower().replace(" ", "").replace("-", "").replace("_", "")
    return "polymailer" in squashed


def get_carton_size(
    length: Any,
    width: Any,
    height: Any,
    package_type: Optional[str] = "",
    thresholds: CartonSizeThresholds = DEFAULT_CARTON_THRESHOLDS,
) -> str:
    """
    Classify a package into S / M / L / XL by volume (inclusive upper bounds).

    Needs all three dimensions, poly mailers included. Poly mailers are
    PM; double-wall ("DW") packages move up one tier, capped at XL.
    """
    l, w, h = to_float(length), to_float(width), to_float(height)
    if not l or not w or not h:
        return ""

    package_type = package_type or ""
    if _is_poly_mailer(package_type):
        return POLY_MAILER

    volume = l * w * h
    if volume <= thresholds.s_max:
        tier = 0
    elif volume <= thresholds.m_max:
        tier = 1
    elif volume <= thresholds.l_max:
        tier = 2
    else:
        tier = 3

    if "DW" in package_type.upper():
        tier = min(tier + 1, len(CARTON_TIERS) - 1)

    return CARTON_TIERS[tier]


def _format_timestamp(value: Any) -> str:
    parsed = parse_timestamp(value)
    return parsed.strftime("%Y-%m-%d %H:%M:%S") if parsed else to_key(value)


def _format_date(value: Any) -> str:
    # Dates are taken as-is; shifting them through a timezone moves midnight ship dates
    parsed = parse_timestamp(value)
    return parsed.strftime("%Y-%m-%d") if parsed else to_key(value)


def _yes_no(value: Any) -> str:
    if isinstance(value, str):
        return "YES" if value.strip().lower() in ("true", "yes", "y", "1") else "NO"
    return "YES" if value else "NO"


def _weight_in_ounces(weight: Any) -> float:
    if not isinstance(weight, dict):
        return 0.0
    value = to_float(weight.get("value"))
    units = to_key(weight.get("units")).lower() or "ounces"
    return round(value * OUNCES_PER_UNIT.get(units, 1.0), 2)


def _dimensions_string(dimensions: Any) -> str:
    if not isinstance(dimensions, dict):
        return ""
    l, w, h = (to_float(dimensions.get(k)) for k in ("length", "width", "height"))
    if not l or not w or not h:
        return ""
    units = to_key(dimensions.get("units"))
    text = f"{l:g}x{w:g}x{h:g}"
    return f"{text} {units}" if units else text


def _items_count(items: Any) -> int:
    if not isinstance(items, list):
        return 0
    return int(sum(to_float(item.get("quantity"), 1.0) for item in items if isinstance(item, dict)))


def transform_shipment(
    record: Dict[str, Any],
    maps: ReferenceMaps,
    config: RunConfig,
    source_type: str = SOURCE_SHIPMENT,
) -> ExportRow:
    """Build the export row for one shipment or fulfillment payload."""
    is_fulfillment = source_type == SOURCE_FULFILLMENT

    warehouse_id = to_key(record.get("warehouseId"))
    store_id = to_key(safe_get(record, "advancedOptions.storeId", record.get("storeId")))
    order_number = to_key(record.get("orderNumber"))

    if is_fulfillment:
        shipment_id = to_key(record.get("fulfillmentId"))
        service_code = record.get("fulfillmentServiceCode") or record.get("serviceCode")
        cost = to_float(record.get("fulfillmentFee"))
    else:
        shipment_id = to_key(record.get("shipmentId"))
        service_code = record.get("serviceCode")
        cost = to_float(record.get("shipmentCost"))

    markup = warehouse_markup(warehouse_id, maps, config.global_markup)
    ctx = ShipmentContext.build(store_id, warehouse_id, order_number, maps, config.house_brand_marker)

    dims = record.get("dimensions") if isinstance(record.get("dimensions"), dict) else {}
    package_type = to_key(record.get("packageCode"))

    return ExportRow(
        create_date=_format_timestamp(record.get("createDate")),
        order_number=order_number,
        order_id=to_key(record.get("orderId")),
        ship_to_name=to_key(safe_get(record, "shipTo.name", "")),
        tracking_number=to_key(record.get("trackingNumber")),
        carrier=normalize_carrier(record.get("carrierCode") or record.get("fulfillmentProviderCode")),
        service=clean_service(service_code),
        ship_date=_format_date(record.get("shipDate")),
        store_id=store_id,
        batch_id=to_key(record.get("batchNumber")),
        shipping_cost=cost,
        warehouse_id=warehouse_id,
        warehouse_name=ctx.warehouse_name,
        billing_cost=calculate_billing_cost(cost, markup),
        store_name=ctx.store_name,
        voided=_yes_no(record.get("voided")),
        shipment_id=shipment_id,
        is_return_label=_yes_no(record.get("isReturnLabel")),
        insurance_cost=to_float(record.get("insuranceCost")),
        items_count=_items_count(record.get("shipmentItems")),
        source_type=source_type,
        weight_oz=_weight_in_ounces(record.get("weight")),
        package_type=package_type,
        dimensions=_dimensions_string(dims),
        carton_size=get_carton_size(
            dims.get("length"), dims.get("width"), dims.get("height"),
            package_type, config.carton_thresholds,
        ),
        client_id=resolve_client_id(ctx, maps),
        sort_key=to_key(record.get("createDate")),
    )
