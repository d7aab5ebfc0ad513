"""
Plugin Record Model

Persistent state of a discovered plugin: activation flag, installed schema
version of its private tables, its setting values and the last lifecycle
error. Created on first discovery, deleted only by an explicit uninstall.
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from cms_core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PluginRecord(Base):
    __tablename__ = "plugin_records"

    identifier = Column(String(100), primary_key=True)
    active = Column(Boolean, nullable=False, default=False)
    schema_version = Column(Integer, nullable=False, default=0)
    settings = Column(JSON, nullable=False, default=dict)
    tenant_id = Column(Integer, nullable=True)  # optional tenant scope
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_plugin_record_active", "active"),
        Index("idx_plugin_record_tenant", "tenant_id"),
    )

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "active": bool(self.active),
            "schema_version": self.schema_version or 0,
            "settings": dict(self.settings or {}),
            "tenant_id": self.tenant_id,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<PluginRecord {self.identifier} active={self.active} v{self.schema_version}>"
