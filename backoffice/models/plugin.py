from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, JSON, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from backoffice.db.base_class import Base


class PluginStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PluginEventStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class Plugin(Base):
    __tablename__ = "plugins"
    __table_args__ = (UniqueConstraint("tenant_id", "slug", name="uq_plugins_tenant_slug"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    slug = Column(String(100), nullable=False)
    name = Column(String(200), nullable=False)
    webhook_url = Column(String(500), nullable=False)
    secret = Column(String(200), nullable=False)
    events = Column(JSON, nullable=False, default=list)

    status = Column(Enum(PluginStatus), default=PluginStatus.ACTIVE, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    deliveries = relationship("PluginEvent", back_populates="plugin", cascade="all, delete-orphan")


class PluginEvent(Base):
    """Outbound webhook outbox row, delivered at least once."""

    __tablename__ = "plugin_events"

    id = Column(Integer, primary_key=True, index=True)
    plugin_id = Column(Integer, ForeignKey("plugins.id"), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(Enum(PluginEventStatus), default=PluginEventStatus.PENDING, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    response_status = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    processed_at = Column(DateTime, nullable=True)

    # Relationships
    plugin = relationship("Plugin", back_populates="deliveries")
