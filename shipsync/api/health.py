"""
Health check and status endpoints
"""
from fastapi import APIRouter
from datetime import datetime
from shipsync.config import get_settings
from shipsync import __version__

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status():
    """Get system status"""
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "export": {
            "spreadsheet_configured": bool(settings.export_spreadsheet_id),
            "shipstation_configured": bool(settings.shipstation_api_key and settings.shipstation_api_secret),
            "export_tab": settings.export_sheet_tab,
            "sync_interval_minutes": settings.sync_interval_minutes,
            "lookback_minutes": settings.lookback_minutes,
            "include_fulfillments": settings.include_fulfillments,
            "auto_alerts": settings.enable_auto_alerts
        },
        "timestamp": datetime.utcnow().isoformat()
    }
