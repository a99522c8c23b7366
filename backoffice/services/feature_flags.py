import zlib
from typing import Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice.core.config import settings
from backoffice.models.feature_flag import FeatureFlag
from backoffice.services.cache_service import TTLCache

logger = structlog.get_logger()


class FeatureFlagService:
    """Tenant-scoped feature flags with percentage rollout, read through a TTL cache."""

    def __init__(self, db: Session, cache: Optional[TTLCache] = None):
        self.db = db
        self.cache = cache or TTLCache(settings.FEATURE_FLAG_CACHE_TTL_SECONDS)

    def is_enabled(self, flag_key: str, tenant_id: Optional[str] = None, default: bool = False) -> bool:
        tenant_id = tenant_id or settings.DEFAULT_TENANT_ID
        cache_key = (tenant_id, flag_key)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            # Tenant-specific row wins over the global (NULL tenant) row
            rows = (
                self.db.query(FeatureFlag)
                .filter(
                    FeatureFlag.flag_key == flag_key,
                    or_(FeatureFlag.tenant_id == tenant_id, FeatureFlag.tenant_id.is_(None)),
                )
                .all()
            )
        except SQLAlchemyError:
            logger.exception("feature_flag_lookup_failed", flag_key=flag_key, tenant_id=tenant_id)
            return default

        row = next((r for r in rows if r.tenant_id == tenant_id), None) or next(iter(rows), None)
        if row is None:
            enabled = default
        elif not row.enabled or row.rollout_percentage <= 0:
            enabled = False
        elif row.rollout_percentage >= 100:
            enabled = True
        else:
            enabled = self.rollout_bucket(tenant_id) < row.rollout_percentage

        self.cache.set(cache_key, enabled)
        return enabled

    def set_flag(self, flag_key: str, enabled: bool, tenant_id: Optional[str] = None, rollout_percentage: int = 100) -> FeatureFlag:
        if not 0 <= rollout_percentage <= 100:
            raise ValueError("rollout_percentage must be between 0 and 100")

        flag = (
            self.db.query(FeatureFlag)
            .filter(FeatureFlag.flag_key == flag_key, FeatureFlag.tenant_id == tenant_id)
            .first()
        )
        if not flag:
            flag = FeatureFlag(flag_key=flag_key, tenant_id=tenant_id)
            self.db.add(flag)
        flag.enabled = enabled
        flag.rollout_percentage = rollout_percentage
        self.db.commit()

        if tenant_id is None:
            self.cache.clear()
        else:
            self.cache.delete((tenant_id, flag_key))
        return flag

    @staticmethod
    def rollout_bucket(tenant_id: str) -> int:
        """Stable 0-99 bucket for a tenant."""
        return zlib.crc32(tenant_id.encode()) % 100
