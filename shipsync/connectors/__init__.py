"""Data connectors for the shipment export pipeline"""

from shipsync.connectors.base_connector import BaseConnector
from shipsync.connectors.shipstation_connector import ShipStationConnector, ApiResult, ApiError
from shipsync.connectors.google_sheets import GoogleSheetsConnector, SheetTab

__all__ = [
    "BaseConnector",
    "ShipStationConnector",
    "ApiResult",
    "ApiError",
    "GoogleSheetsConnector",
    "SheetTab",
]
