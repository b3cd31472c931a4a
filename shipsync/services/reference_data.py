"""
Reference Data Resolver

Loads the Warehouses and Stores tabs once per run and answers two questions
for every shipment: which client owns it, and what markup applies to its
warehouse.

Client resolution is an ordered list of strategies. Each strategy is a pure
function (ShipmentContext, ReferenceMaps) -> client id or None; the first
non-empty answer wins and UNKNOWN is the fallback.
"""
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
import re

from shipsync.services.run_config import parse_markup
from shipsync.utils.helpers import to_float, to_key
from shipsync.utils.logger import log

UNKNOWN_CLIENT = "UNKNOWN"

# Warehouses tab columns (0-based)
WAREHOUSE_ID_COL = 0
WAREHOUSE_NAME_COL = 1
WAREHOUSE_CLIENT_COL = 2
WAREHOUSE_MARKUP_COL = 6

# Stores tab columns (0-based)
STORE_ID_COL = 0
STORE_NAME_COL = 1
STORE_CLIENT_COL = 2

WAREHOUSE_HEADER = [
    "Warehouse ID", "Warehouse Name", "Client ID", "Client Emails",
    "CC Emails", "Notes", "Markup %",
]
STORE_HEADER = ["Store ID", "Store Name", "Client ID"]

_BRACKET_TAG = re.compile(r"^\[([A-Z]{3})\]")
_ORDER_PREFIX = re.compile(r"^([A-Za-z]{3})[-_\s]")


@dataclass
class ReferenceMaps:
    """Lookup tables built once per run. Treat as read-only."""
    warehouse_client: Dict[str, str] = field(default_factory=dict)
    client_names: Dict[str, str] = field(default_factory=dict)
    warehouse_names: Dict[str, str] = field(default_factory=dict)
    store_names: Dict[str, str] = field(default_factory=dict)
    store_client: Dict[str, str] = field(default_factory=dict)
    warehouse_markup_cells: Dict[str, str] = field(default_factory=dict)


def _cell(row: Sequence, index: int) -> str:
    return to_key(row[index]) if index < len(row) else ""


def extract_client_id(name: Optional[str]) -> str:
    """'[ABC] Storefront' -> 'ABC'"""
    if not name:
        return ""
    match = _BRACKET_TAG.match(str(name))
    return match.group(1) if match else ""


def extract_client_id_from_order_number(order_number: Optional[str]) -> str:
    """'abc-10023' -> 'ABC'"""
    if not order_number:
        return ""
    match = _ORDER_PREFIX.match(str(order_number))
    return match.group(1).upper() if match else ""


def build_reference_maps(warehouse_rows: List[List], store_rows: List[List]) -> ReferenceMaps:
    """
    Build lookup maps from raw tab rows (header row first).

    Missing or empty tables give empty maps.
    """
    maps = ReferenceMaps()

    for row in (warehouse_rows or [])[1:]:
        warehouse_id = _cell(row, WAREHOUSE_ID_COL)
        if not warehouse_id:
            continue
        name = _cell(row, WAREHOUSE_NAME_COL)
        client_id = _cell(row, WAREHOUSE_CLIENT_COL)
        maps.warehouse_names[warehouse_id] = name
        if client_id:
            maps.warehouse_client[warehouse_id] = client_id
            if name:
                maps.client_names.setdefault(client_id, name)
        # First matching row wins, as a top-down scan would find it
        maps.warehouse_markup_cells.setdefault(warehouse_id, _cell(row, WAREHOUSE_MARKUP_COL))

    for row in (store_rows or [])[1:]:
        store_id = _cell(row, STORE_ID_COL)
        if not store_id:
            continue
        name = _cell(row, STORE_NAME_COL)
        maps.store_names[store_id] = name
        client_id = _cell(row, STORE_CLIENT_COL)
        if client_id:
            maps.store_client[store_id] = client_id

    return maps


def _read_tab(sheets, title: str) -> List[List[str]]:
    tab = sheets.tab(title)
    if not tab.exists():
        log.warning(f"{title} sheet not found, using empty map")
        return []
    return tab.read_all()


def load_reference_maps(sheets, warehouses_tab: str = "Warehouses", stores_tab: str = "Stores") -> ReferenceMaps:
    """Read the reference tabs through a GoogleSheetsConnector and build the maps."""
    maps = build_reference_maps(_read_tab(sheets, warehouses_tab), _read_tab(sheets, stores_tab))
    log.info(
        f"Built reference maps: {len(maps.warehouse_names)} warehouses, "
        f"{len(maps.store_names)} stores, {len(maps.client_names)} clients"
    )
    return maps


# Client resolution

@dataclass(frozen=True)
class ShipmentContext:
    """The identifying fields of one shipment that client resolution looks at."""
    store_id: str = ""
    store_name: str = ""
    warehouse_id: str = ""
    warehouse_name: str = ""
    order_number: str = ""
    is_house_brand: bool = False

    @classmethod
    def build(
        cls,
        store_id: str,
        warehouse_id: str,
        order_number: str,
        maps: ReferenceMaps,
        house_brand_marker: str,
    ) -> "ShipmentContext":
        store_name = maps.store_names.get(store_id, "")
        marker = (house_brand_marker or "").lower()
        return cls(
            store_id=store_id,
            store_name=store_name,
            warehouse_id=warehouse_id,
            warehouse_name=maps.warehouse_names.get(warehouse_id, ""),
            order_number=order_number,
            is_house_brand=bool(marker) and marker in store_name.lower(),
        )


ClientStrategy = Callable[[ShipmentContext, ReferenceMaps], Optional[str]]


def resolve_from_store(ctx: ShipmentContext, maps: ReferenceMaps) -> Optional[str]:
    if ctx.is_house_brand:
        return None
    if ctx.store_id and maps.store_client.get(ctx.store_id):
        return maps.store_client[ctx.store_id]
    return extract_client_id(ctx.store_name) or None


def resolve_from_warehouse(ctx: ShipmentContext, maps: ReferenceMaps) -> Optional[str]:
    if ctx.warehouse_id and maps.warehouse_client.get(ctx.warehouse_id):
        return maps.warehouse_client[ctx.warehouse_id]
    return extract_client_id(ctx.warehouse_name) or None


def resolve_from_order_number(ctx: ShipmentContext, maps: ReferenceMaps) -> Optional[str]:
    if not ctx.is_house_brand:
        return None
    return extract_client_id_from_order_number(ctx.order_number) or None


CLIENT_RESOLVERS: Sequence[ClientStrategy] = (
    resolve_from_store,
    resolve_from_warehouse,
    resolve_from_order_number,
)


def resolve_client_id(
    ctx: ShipmentContext,
    maps: ReferenceMaps,
    strategies: Sequence[ClientStrategy] = CLIENT_RESOLVERS,
) -> str:
    for strategy in strategies:
        client_id = strategy(ctx, maps)
        if client_id:
            return client_id
    return UNKNOWN_CLIENT


# Markup

def warehouse_markup(warehouse_id: str, maps: ReferenceMaps, global_markup: float) -> float:
    """
    Markup percentage for a warehouse.

    Empty cell or 'default' (any case) inherits the global markup, as do
    unknown warehouses and cells that don't parse as a number.
    """
    cell = maps.warehouse_markup_cells.get(to_key(warehouse_id))
    if cell is None:
        return global_markup
    if not cell or cell.lower() == "default":
        return global_markup
    return parse_markup(cell, default=global_markup)


def calculate_billing_cost(original_cost, markup_percentage: float) -> float:
    """Cost billed to the client. Free shipments stay free."""
    cost = to_float(original_cost)
    if cost == 0:
        return 0
    return round(cost * (1 + markup_percentage / 100), 2)


# Reference table refresh

async def refresh_reference_tables(
    connector,
    sheets,
    warehouses_tab: str = "Warehouses",
    stores_tab: str = "Stores",
) -> Dict[str, int]:
    """
    Append warehouses and stores known to ShipStation but missing from the
    reference tabs. Existing rows (client ids, markups) are never touched.
    """
    added = {"warehouses": 0, "stores": 0}

    sources = (
        ("warehouses", warehouses_tab, WAREHOUSE_HEADER, await connector.fetch_warehouses(),
         "warehouseId", "warehouseName"),
        ("stores", stores_tab, STORE_HEADER, await connector.fetch_stores(),
         "storeId", "storeName"),
    )

    for kind, title, header, records, id_field, name_field in sources:
        if not records:
            continue
        tab = sheets.tab(title)
        if not tab.exists():
            tab = sheets.create_tab(title, header)
        known = {_cell(row, 0) for row in tab.read_all()[1:]}
        for record in records:
            record_id = to_key(record.get(id_field))
            if not record_id or record_id in known:
                continue
            row = [record_id, to_key(record.get(name_field))] + [""] * (len(header) - 2)
            tab.append_row(row)
            known.add(record_id)
            added[kind] += 1

    log.info(f"Reference tables refreshed: {added['warehouses']} warehouses, {added['stores']} stores added")
    return added
