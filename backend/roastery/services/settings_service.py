# Overview: Service-layer operations for durable site settings (maintenance mode).

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import SiteSetting
from ..time_utils import utcnow


MAINTENANCE_MODE_KEY = "maintenance_mode"


def get_setting(key: str, default: Any = None) -> Any:
    row = db.session.query(SiteSetting).filter_by(key=key).first()
    if row is None:
        return default
    return row.value_json


def set_setting(key: str, value: Any, *, user_id: int | None = None) -> SiteSetting:
    """Create or replace a setting value and commit."""
    row = db.session.query(SiteSetting).filter_by(key=key).first()
    if row is None:
        row = SiteSetting(key=key)
        db.session.add(row)
    row.value_json = value
    row.updated_by_user_id = user_id
    row.updated_at = utcnow()
    try:
        db.session.commit()
    except IntegrityError:
        # Another instance inserted the key first; overwrite its row
        db.session.rollback()
        row = db.session.query(SiteSetting).filter_by(key=key).one()
        row.value_json = value
        row.updated_by_user_id = user_id
        row.updated_at = utcnow()
        db.session.commit()
    return row


def is_maintenance_mode() -> bool:
    return bool(get_setting(MAINTENANCE_MODE_KEY, False))


def set_maintenance_mode(enabled: bool, *, user_id: int | None = None) -> bool:
    set_setting(MAINTENANCE_MODE_KEY, bool(enabled), user_id=user_id)
    return bool(enabled)
