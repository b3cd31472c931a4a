"""
Pipeline state models

The export itself lives in Google Sheets. These tables hold everything the
pipeline needs to remember between runs: scalar configuration properties,
the backfill checkpoint, the durable warning/error log and a per-run audit.
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from datetime import datetime

from shipsync.models.base import Base


class SyncProperty(Base):
    """
    Key/value configuration property.

    Holds COST_MARKUP_PERCENTAGE, CARTON_SIZE_*_MAX, CLIENT_EMAILS_ENABLED
    and the serialized backfill checkpoint.
    """
    __tablename__ = "sync_properties"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SystemLogEntry(Base):
    """WARNING / ERROR / CRITICAL log records mirrored from the logger."""
    __tablename__ = "system_log"

    id = Column(Integer, primary_key=True, index=True)
    logged_at = Column(DateTime, index=True, default=datetime.utcnow)
    level = Column(String, index=True)
    message = Column(Text)
    data = Column(Text, nullable=True)  # JSON of bound context
    module = Column(String, nullable=True)
    version = Column(String, nullable=True)


class SyncRunLog(Base):
    """
    One row per pipeline run.

    status: success, partial (degraded), paused (backfill rescheduled),
    skipped (lock contention), failed
    """
    __tablename__ = "sync_run_logs"

    id = Column(Integer, primary_key=True, index=True)
    mode = Column(String, index=True)  # normal, backfill
    status = Column(String, index=True)

    rows_fetched = Column(Integer, default=0)
    rows_written = Column(Integer, default=0)
    rows_skipped = Column(Integer, default=0)  # duplicates already in the sheet
    pages_failed = Column(Integer, default=0)

    window_start = Column(String, nullable=True)
    window_end = Column(String, nullable=True)

    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)
