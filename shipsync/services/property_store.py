"""
Key/value property store backed by the sync_properties table.
"""
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from shipsync.models.base import SessionLocal
from shipsync.models.sync_state import SyncProperty
from shipsync.utils.logger import log

# Property keys
COST_MARKUP_PERCENTAGE = "COST_MARKUP_PERCENTAGE"
CARTON_SIZE_S_MAX = "CARTON_SIZE_S_MAX"
CARTON_SIZE_M_MAX = "CARTON_SIZE_M_MAX"
CARTON_SIZE_L_MAX = "CARTON_SIZE_L_MAX"
CARTON_SIZE_XL_MAX = "CARTON_SIZE_XL_MAX"
CLIENT_EMAILS_ENABLED = "CLIENT_EMAILS_ENABLED"
BACKFILL_CHECKPOINT = "BACKFILL_CHECKPOINT"


class PropertyStore:
    """Read/write scalar properties. Each call uses its own short session."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        db = self._session_factory()
        try:
            prop = db.get(SyncProperty, key)
            if prop is None or prop.value is None:
                return default
            return prop.value
        finally:
            db.close()

    def get_all(self) -> Dict[str, str]:
        db = self._session_factory()
        try:
            return {p.key: p.value for p in db.query(SyncProperty).all() if p.value is not None}
        finally:
            db.close()

    def set(self, key: str, value: str) -> None:
        db = self._session_factory()
        try:
            prop = db.get(SyncProperty, key)
            if prop is None:
                prop = SyncProperty(key=key)
                db.add(prop)
            prop.value = value
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        log.debug(f"Property set: {key}")

    def set_many(self, values: Dict[str, str]) -> None:
        """Write several properties in one transaction."""
        db = self._session_factory()
        try:
            for key, value in values.items():
                prop = db.get(SyncProperty, key)
                if prop is None:
                    prop = SyncProperty(key=key)
                    db.add(prop)
                prop.value = value
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, key: str) -> bool:
        db = self._session_factory()
        try:
            prop = db.get(SyncProperty, key)
            if prop is None:
                return False
            db.delete(prop)
            db.commit()
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
