"""
Logging configuration
"""
from loguru import logger
import json
import os
import sys
from shipsync.config import get_settings

settings = get_settings()


def _store_sink(message):
    """Mirror WARNING+ records into the system_log table.

    A failure here must never break the caller, so it is reported on stderr
    instead of going back through the logger.
    """
    record = message.record
    try:
        from shipsync import __version__
        from shipsync.models.base import SessionLocal
        from shipsync.models.sync_state import SystemLogEntry

        extra = dict(record["extra"])
        db = SessionLocal()
        try:
            db.add(SystemLogEntry(
                logged_at=record["time"].replace(tzinfo=None),
                level=record["level"].name,
                message=record["message"],
                data=json.dumps(extra, default=str) if extra else None,
                module=f"{record['name']}:{record['function']}",
                version=__version__,
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
    except Exception as e:
        sys.stderr.write(f"Failed to write log entry to store: {e}\n")


def setup_logger():
    """Configure logger with appropriate settings"""
    logger.remove()  # Remove default handler

    # Console logging
    logger.add(
        sys.stdout,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level
    )

    os.makedirs(settings.log_dir, exist_ok=True)

    # File logging
    logger.add(
        os.path.join(settings.log_dir, "shipsync_{time:YYYY-MM-DD}.log"),
        rotation="00:00",
        retention="30 days",
        compression="zip",
        level="INFO"
    )

    # Error file
    logger.add(
        os.path.join(settings.log_dir, "errors_{time:YYYY-MM-DD}.log"),
        rotation="00:00",
        retention="90 days",
        level="ERROR"
    )

    # Durable log store
    if settings.log_to_store:
        logger.add(
            _store_sink,
            level="WARNING",
        )

    return logger


# Initialize logger
log = setup_logger()
