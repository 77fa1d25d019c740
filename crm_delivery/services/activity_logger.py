"""
Activity logger for the CRM audit feed (orders shipped, bulk updates, syncs).
"""
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from crm_delivery.models_sqlalchemy.models import Activity
from crm_delivery.utils.logger import logger


class ActivityType:
    ORDER_SHIPPED = "ORDER_SHIPPED"
    SHIPMENT_STATUS_CHANGED = "SHIPMENT_STATUS_CHANGED"
    SHIPMENT_CANCELLED = "SHIPMENT_CANCELLED"
    SHIPMENTS_BULK_UPDATED = "SHIPMENTS_BULK_UPDATED"
    DELIVERY_CONNECTION_TEST = "DELIVERY_CONNECTION_TEST"
    DELIVERY_AGENCY_UPDATED = "DELIVERY_AGENCY_UPDATED"
    DELIVERY_MANUAL_SYNC = "DELIVERY_MANUAL_SYNC"


class ActivityLogger:
    """Writes rows to ``activities``.

    Audit writes never break the operation that triggered them: failures are
    logged and dropped.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def log(
        self,
        type: str,
        description: str,
        *,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        db = self._session_factory()
        try:
            db.add(
                Activity(
                    type=type,
                    description=description,
                    user_id=user_id,
                    order_id=order_id,
                    extra_data=metadata,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            db.commit()
        except Exception as e:
            logger.error(f"Failed to persist activity {type}: {str(e)}")
            db.rollback()
        finally:
            db.close()

    def log_for_actor(self, actor, type: str, description: str, **kwargs) -> None:
        """Same as :meth:`log`, filling user and request info from an Actor."""

        if actor is not None:
            kwargs.setdefault("user_id", actor.id)
            kwargs.setdefault("ip_address", actor.ip_address)
            kwargs.setdefault("user_agent", actor.user_agent)
        self.log(type, description, **kwargs)
