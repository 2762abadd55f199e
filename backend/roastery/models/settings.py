from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class SiteSetting(db.Model):
    """
    Durable site-wide configuration value (JSON).

    WHY: Flags such as maintenance mode must be shared by every server
    instance and survive restarts, so they live in the database rather than
    in process memory.
    """
    __tablename__ = "site_settings"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(128), nullable=False, unique=True, index=True)
    value_json = db.Column(db.JSON, nullable=True)
    updated_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=utcnow)

    updated_by = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value_json,
            "updated_by_user_id": self.updated_by_user_id,
            "updated_at": to_utc_z(self.updated_at),
        }
