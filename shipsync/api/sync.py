"""
Export sync endpoints
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from datetime import datetime

from shipsync.services.export_sync_service import ExportSyncService
from shipsync.services.run_config import (
    load_run_config,
    set_carton_size_settings,
    set_client_emails_enabled,
    set_global_markup,
)
from shipsync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

# In-memory status of background runs
_sync_status = {}


def _update_sync_status(task: str, status: str, result=None, error=None):
    _sync_status[task] = {
        "status": status,
        "updated_at": datetime.utcnow().isoformat(),
        "result": result,
        "error": error,
    }


def get_service() -> ExportSyncService:
    from shipsync.scheduler import build_service
    return build_service()


class BackfillRequest(BaseModel):
    start: datetime
    end: datetime
    force: bool = False


class CartonSizeRequest(BaseModel):
    s_max: float
    m_max: float
    l_max: float
    xl_max: Optional[float] = None


class MarkupRequest(BaseModel):
    markup: float


class ClientEmailsRequest(BaseModel):
    enabled: bool


async def _run_incremental(service: ExportSyncService):
    """Background task: one incremental export."""
    _update_sync_status("incremental", "running")
    try:
        result = await service.run_incremental_sync()
        _update_sync_status("incremental", "completed" if result.get("success") else result.get("status", "failed"),
                            result=result, error=result.get("error"))
    except Exception as e:
        log.error(f"Background export error: {str(e)}")
        _update_sync_status("incremental", "failed", error=str(e))


async def _run_refresh(service: ExportSyncService):
    _update_sync_status("reference", "running")
    result = await service.refresh_reference_tables()
    _update_sync_status("reference", "completed" if result.get("success") else "failed",
                        result=result, error=result.get("error"))


@router.post("/run")
async def run_sync(background_tasks: BackgroundTasks, service: ExportSyncService = Depends(get_service)):
    """
    Run one incremental export in the background.
    Check progress at GET /sync/progress
    """
    _update_sync_status("incremental", "started")
    background_tasks.add_task(_run_incremental, service)
    return {"message": "Export started in background", "check_progress": "/sync/progress"}


@router.get("/progress")
async def sync_progress():
    return _sync_status


@router.get("/history")
async def sync_history(service: ExportSyncService = Depends(get_service)):
    """Recent runs, backfill progress and the active configuration."""
    return service.get_status()


@router.post("/backfill")
async def start_backfill(request: BackfillRequest, service: ExportSyncService = Depends(get_service)):
    """Create a backfill and schedule its first chunk; returns without waiting."""
    result = await service.start_backfill(request.start, request.end, force=request.force)
    if not result["success"]:
        raise HTTPException(status_code=409 if "checkpoint" in result else 400, detail=result["error"])
    return result


@router.get("/backfill")
async def backfill_status(service: ExportSyncService = Depends(get_service)):
    return service.backfill_status()


@router.post("/backfill/resume")
async def resume_backfill(service: ExportSyncService = Depends(get_service)):
    result = service.resume_backfill()
    if not result["success"]:
        raise HTTPException(status_code=404, detail=result["error"])
    return result


@router.delete("/backfill")
async def cancel_backfill(service: ExportSyncService = Depends(get_service)):
    return service.cancel_backfill()


@router.post("/reference/refresh")
async def refresh_reference(background_tasks: BackgroundTasks, service: ExportSyncService = Depends(get_service)):
    """Append warehouses and stores missing from the reference tabs (background)."""
    _update_sync_status("reference", "started")
    background_tasks.add_task(_run_refresh, service)
    return {"message": "Reference refresh started in background", "check_progress": "/sync/progress"}


# Settings

@router.get("/settings")
async def get_sync_settings():
    config = load_run_config()
    return {
        "global_markup": config.global_markup,
        "carton_thresholds": config.carton_thresholds.to_dict(),
        "client_emails_enabled": config.client_emails_enabled,
    }


@router.put("/settings/carton-sizes")
async def update_carton_sizes(request: CartonSizeRequest):
    try:
        thresholds = set_carton_size_settings(request.s_max, request.m_max, request.l_max, request.xl_max)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "carton_thresholds": thresholds.to_dict()}


@router.put("/settings/markup")
async def update_markup(request: MarkupRequest):
    return {"success": True, "global_markup": set_global_markup(request.markup)}


@router.put("/settings/client-emails")
async def update_client_emails(request: ClientEmailsRequest):
    return {"success": True, "client_emails_enabled": set_client_emails_enabled(request.enabled)}
