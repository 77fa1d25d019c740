from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from crm_delivery.models_sqlalchemy import SessionLocal
from crm_delivery.services.activity_logger import ActivityLogger
from crm_delivery.services.delivery.agencies import builtin_agencies
from crm_delivery.services.delivery.agency_registry import AgencyRegistry
from crm_delivery.services.delivery.delivery_service import DeliveryService
from crm_delivery.services.delivery.sync_service import DeliverySyncService
from crm_delivery.services.delivery.types import AgencyAdapter


@dataclass
class DeliveryContainer:
    registry: AgencyRegistry
    delivery_service: DeliveryService
    sync_service: DeliverySyncService
    activity: ActivityLogger


def build_delivery_container(
    session_factory: Callable[[], Session] = SessionLocal,
    adapters_factory: Optional[Callable[[], Iterable[AgencyAdapter]]] = None,
    **service_options,
) -> DeliveryContainer:
    """Wire the delivery services together for one application instance.

    ``service_options`` may carry ``sleep`` and ``delay_seconds`` overrides,
    which tests use to run sync passes without real waits.
    """

    sleep = service_options.get("sleep")
    registry = AgencyRegistry(session_factory, adapters_factory or builtin_agencies)
    activity = ActivityLogger(session_factory)

    delivery_kwargs = {}
    sync_kwargs = {}
    if sleep is not None:
        delivery_kwargs["sleep"] = sleep
        sync_kwargs["sleep"] = sleep
    if "max_create_attempts" in service_options:
        delivery_kwargs["max_create_attempts"] = service_options["max_create_attempts"]
    if "delay_seconds" in service_options:
        sync_kwargs["delay_seconds"] = service_options["delay_seconds"]

    delivery_service = DeliveryService(registry, session_factory, activity, **delivery_kwargs)
    sync_service = DeliverySyncService(delivery_service, registry, session_factory, **sync_kwargs)
    return DeliveryContainer(
        registry=registry,
        delivery_service=delivery_service,
        sync_service=sync_service,
        activity=activity,
    )


def get_delivery(request: Request) -> DeliveryContainer:
    """FastAPI dependency returning the container stored on ``app.state``."""

    return request.app.state.delivery
