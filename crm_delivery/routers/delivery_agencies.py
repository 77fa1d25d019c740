from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from crm_delivery.models_sqlalchemy.models import CredentialsType
from crm_delivery.services.activity_logger import ActivityType
from crm_delivery.services.auth import Actor, admin_required, get_current_user
from crm_delivery.services.delivery import DeliveryContainer, get_delivery
from crm_delivery.services.delivery.agency_registry import merge_config
from crm_delivery.services.delivery.types import AgencyConfig, DeliveryCredentials
from crm_delivery.utils.logger import logger


router = APIRouter(prefix="/api/delivery/agencies", tags=["delivery-agencies"])


class CredentialsPayload(BaseModel):
    type: Optional[CredentialsType] = None
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    apiKey: Optional[str] = None

    def to_update(self) -> Dict[str, Any]:
        return {
            "type": self.type.value if self.type else None,
            "username": self.username,
            "email": self.email,
            "password": self.password,
            "api_key": self.apiKey,
        }


class AgencyUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    credentials: Optional[CredentialsPayload] = None
    settings: Optional[Dict[str, Any]] = None
    webhookUrl: Optional[str] = None
    pollingInterval: Optional[int] = Field(None, ge=1, le=24 * 60)


class ConnectionTestRequest(BaseModel):
    # Unsaved credentials to try; the stored ones are used when omitted.
    credentials: Optional[CredentialsPayload] = None


def _describe(delivery: DeliveryContainer, agency_id: str) -> Optional[Dict[str, Any]]:
    adapter = delivery.registry.get_agency(agency_id)
    if adapter is None:
        return None
    config = delivery.registry.get_agency_config(agency_id)
    out: Dict[str, Any] = {
        "id": adapter.id,
        "name": adapter.name,
        "supportedRegions": list(adapter.supported_regions),
        "credentialsType": adapter.credentials_type.value,
        "enabled": False,
        "configured": False,
    }
    if config is not None:
        out.update(config.masked())
        out["supportedRegions"] = list(adapter.supported_regions)
    return out


@router.get("")
async def list_agencies(
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    await delivery.registry.ensure_initialized()
    agencies = [_describe(delivery, a.id) for a in delivery.registry.get_all_agencies()]
    return {"agencies": agencies, "loadError": delivery.registry.load_error}


@router.get("/{agency_id}")
async def get_agency(
    agency_id: str,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(get_current_user),
) -> Dict[str, Any]:
    await delivery.registry.ensure_initialized()
    described = _describe(delivery, agency_id)
    if described is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agency not found")
    return described


@router.put("/{agency_id}")
async def update_agency(
    agency_id: str,
    payload: AgencyUpdateRequest,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(admin_required),
) -> Dict[str, Any]:
    update: Dict[str, Any] = {
        "enabled": payload.enabled,
        "settings": payload.settings,
        "webhook_url": payload.webhookUrl,
        "polling_interval": payload.pollingInterval,
    }
    if payload.credentials is not None:
        update["credentials"] = payload.credentials.to_update()

    try:
        config = await delivery.registry.update_agency_config(agency_id, update)
    except SQLAlchemyError as e:
        logger.error(f"Agency update failed for {agency_id}: {type(e).__name__}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save agency configuration")

    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agency not found")

    delivery.activity.log_for_actor(
        current_user,
        ActivityType.DELIVERY_AGENCY_UPDATED,
        f"Delivery agency {config.name} updated (enabled={config.enabled})",
        metadata={"agencyId": agency_id, "enabled": config.enabled, "credentialsChanged": payload.credentials is not None},
    )
    return _describe(delivery, agency_id)


@router.post("/{agency_id}/test")
async def test_agency_connection(
    agency_id: str,
    payload: Optional[ConnectionTestRequest] = None,
    delivery: DeliveryContainer = Depends(get_delivery),
    current_user: Actor = Depends(admin_required),
) -> Dict[str, Any]:
    await delivery.registry.ensure_initialized()
    adapter = delivery.registry.get_agency(agency_id)
    config = delivery.registry.get_agency_config(agency_id)
    if adapter is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agency not found")

    if config is None:
        config = AgencyConfig(
            id=adapter.id,
            name=adapter.name,
            credentials=DeliveryCredentials(type=adapter.credentials_type),
        )
    if payload is not None and payload.credentials is not None:
        config = merge_config(config, {"credentials": payload.credentials.to_update()})

    result = await adapter.test_connection(config.credentials)

    delivery.activity.log_for_actor(
        current_user,
        ActivityType.DELIVERY_CONNECTION_TEST,
        f"Connection test for {adapter.name}: {'success' if result.success else 'failed'}",
        metadata={
            "agencyId": agency_id,
            "success": result.success,
            "error": result.error,
            "errorKind": result.error_kind.value if result.error_kind else None,
        },
    )
    return {
        "success": result.success,
        "error": result.error,
        "errorKind": result.error_kind.value if result.error_kind else None,
        "details": result.details,
    }
