from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from backoffice.api.deps import Principal, get_feature_flags, get_plugin_service, require_admin, require_owner
from backoffice.db.session import get_db
from backoffice.models.plugin import Plugin, PluginEvent
from backoffice.schemas.plugin import FeatureFlagUpdate, PluginCreate, PluginCreatedResponse, PluginResponse
from backoffice.services.feature_flags import FeatureFlagService
from backoffice.services.plugin_service import PluginEvents, PluginService
from backoffice.api.responses import success

router = APIRouter()


@router.get("/events")
def list_event_types(principal: Principal = Depends(require_admin)):
    return success(data=PluginEvents.all())


@router.get("/")
def list_plugins(
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    plugins = db.query(Plugin).filter(Plugin.tenant_id == principal.tenant_id).order_by(Plugin.id.asc()).all()
    return success(data=[PluginResponse.model_validate(p).model_dump() for p in plugins])


@router.post("/", status_code=status.HTTP_201_CREATED)
def register_plugin(
    payload: PluginCreate,
    principal: Principal = Depends(require_admin),
    service: PluginService = Depends(get_plugin_service),
):
    """Register a webhook subscriber. The signing secret is only returned here."""
    plugin = service.register_plugin(
        principal.tenant_id,
        payload.slug,
        payload.name,
        payload.webhook_url,
        payload.events,
    )
    return success(data=PluginCreatedResponse.model_validate(plugin).model_dump(), message="Plugin registered")


@router.get("/deliveries")
def list_deliveries(
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    events = (
        db.query(PluginEvent)
        .filter(PluginEvent.tenant_id == principal.tenant_id)
        .order_by(PluginEvent.created_at.desc(), PluginEvent.id.desc())
        .limit(limit)
        .all()
    )
    return success(
        data=[
            {
                "id": e.id,
                "plugin_id": e.plugin_id,
                "event_type": e.event_type,
                "status": e.status.value,
                "retry_count": e.retry_count,
                "response_status": e.response_status,
                "error_message": e.error_message,
                "created_at": e.created_at,
                "processed_at": e.processed_at,
            }
            for e in events
        ]
    )


@router.put("/flags/{flag_key}")
def set_feature_flag(
    flag_key: str,
    payload: FeatureFlagUpdate,
    principal: Principal = Depends(require_owner),
    flags: FeatureFlagService = Depends(get_feature_flags),
):
    """Set a tenant-level feature flag (owner only)."""
    flag = flags.set_flag(flag_key, payload.enabled, principal.tenant_id, payload.rollout_percentage)
    return success(
        data={"flag_key": flag.flag_key, "enabled": flag.enabled, "rollout_percentage": flag.rollout_percentage},
        message="Feature flag updated",
    )
