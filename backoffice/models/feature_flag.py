from sqlalchemy import Column, Integer, String, DateTime, Boolean, UniqueConstraint
from datetime import datetime
from backoffice.db.base_class import Base


class FeatureFlag(Base):
    __tablename__ = "feature_flags"
    __table_args__ = (UniqueConstraint("tenant_id", "flag_key", name="uq_feature_flags_tenant_key"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=True)  # NULL = global default
    flag_key = Column(String(100), nullable=False, index=True)
    enabled = Column(Boolean, default=False, nullable=False)
    rollout_percentage = Column(Integer, default=100, nullable=False)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
