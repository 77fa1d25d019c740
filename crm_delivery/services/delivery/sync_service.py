from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from crm_delivery.config import settings
from crm_delivery.models_sqlalchemy.models import ACTIVE_DELIVERY_STATUSES, DeliveryShipment, DeliveryStatus
from crm_delivery.services.delivery.agency_registry import AgencyRegistry
from crm_delivery.services.delivery.delivery_service import DeliveryService, shipment_to_dict
from crm_delivery.services.delivery.types import (
    DeliveryTrackingResponse,
    SyncDetail,
    SyncFailure,
    SyncResult,
)
from crm_delivery.utils.logger import logger


class SyncAlreadyRunningError(RuntimeError):
    pass


# (shipment id, tracking number, agency id, status)
_Target = Tuple[str, str, str, DeliveryStatus]


class DeliverySyncService:
    """Polls couriers for active shipments, one at a time, oldest first.

    At most one pass runs per instance. A second caller gets
    :class:`SyncAlreadyRunningError` instead of a parallel run.
    """

    def __init__(
        self,
        delivery_service: DeliveryService,
        registry: AgencyRegistry,
        session_factory: Callable[[], Session],
        *,
        delay_seconds: Optional[float] = None,
        stale_hours: Optional[int] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.delivery_service = delivery_service
        self.registry = registry
        self._session_factory = session_factory
        self._delay_seconds = settings.DELIVERY_SYNC_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self._stale_hours = stale_hours or settings.DELIVERY_STALE_HOURS
        self._sleep = sleep

        self._is_running = False
        self._current_label: Optional[str] = None
        self._cancel_event = asyncio.Event()
        self.last_sync: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    def get_status(self) -> Dict[str, Any]:
        return {
            "isRunning": self._is_running,
            "currentRun": self._current_label,
            "lastSync": self.last_sync.isoformat() if self.last_sync else None,
            "lastResult": self.last_result.to_dict() if self.last_result else None,
        }

    def cancel(self) -> bool:
        """Ask the running pass to stop after the shipment it is on."""

        if not self._is_running:
            return False
        self._cancel_event.set()
        logger.info("Delivery sync cancellation requested")
        return True

    async def sync_all_shipments(self) -> SyncResult:
        return await self._run("all", lambda q: q)

    async def sync_shipments_by_status(self, status: DeliveryStatus) -> SyncResult:
        if status not in ACTIVE_DELIVERY_STATUSES:
            raise ValueError(f"Only active statuses can be synced, got {status.value}")
        return await self._run(f"status:{status.value}", lambda q: q.filter(DeliveryShipment.status == status))

    async def sync_shipments_by_agency(self, agency_id: str) -> SyncResult:
        result = await self._run(
            f"agency:{agency_id}",
            lambda q: q.filter(DeliveryShipment.agency_id == agency_id),
        )
        if not result.cancelled:
            await self.registry.set_last_sync(agency_id)
        return result

    async def sync_single_shipment(self, shipment_id: str) -> DeliveryTrackingResponse:
        return await self.delivery_service.track_shipment(shipment_id)

    def get_stale_shipments(self, hours: Optional[int] = None) -> List[Dict[str, Any]]:
        """Active shipments whose status has not moved for ``hours``."""

        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours or self._stale_hours)
        db = self._session_factory()
        try:
            rows = (
                db.query(DeliveryShipment)
                .filter(
                    DeliveryShipment.status.in_(ACTIVE_DELIVERY_STATUSES),
                    DeliveryShipment.last_status_update < cutoff,
                )
                .order_by(DeliveryShipment.last_status_update.asc())
                .all()
            )
            return [shipment_to_dict(s) for s in rows]
        finally:
            db.close()

    def _load_targets(self, scope) -> List[_Target]:
        db = self._session_factory()
        try:
            q = db.query(DeliveryShipment).filter(DeliveryShipment.status.in_(ACTIVE_DELIVERY_STATUSES))
            q = scope(q).order_by(DeliveryShipment.last_status_update.asc())
            return [(s.id, s.tracking_number, s.agency_id, s.status) for s in q.all()]
        finally:
            db.close()

    async def _run(self, label: str, scope) -> SyncResult:
        # Check-and-set with no await in between.
        if self._is_running:
            raise SyncAlreadyRunningError("Sync already in progress")
        self._is_running = True
        self._current_label = label
        self._cancel_event.clear()

        start = time.time()
        self.last_sync = datetime.now(timezone.utc)
        result = SyncResult()
        logger.info(f"Starting shipment sync ({label})...")

        try:
            await self.registry.ensure_initialized()
            targets = self._load_targets(scope)
            logger.info(f"Found {len(targets)} active shipments for sync ({label})")

            for index, (shipment_id, tracking_number, agency_id, old_status) in enumerate(targets):
                if self._cancel_event.is_set():
                    result.cancelled = True
                    logger.info(f"Sync ({label}) cancelled after {result.processed} shipment(s)")
                    break
                if index > 0 and self._delay_seconds:
                    await self._sleep(self._delay_seconds)

                result.processed += 1
                try:
                    tracking = await self.delivery_service.track_shipment(shipment_id)
                except Exception as e:
                    result.errors += 1
                    result.failures.append(SyncFailure(shipment_id, tracking_number, f"{type(e).__name__}: {e}"))
                    logger.error(f"Error syncing {tracking_number}: {type(e).__name__}: {e}")
                    continue

                if not tracking.success:
                    result.errors += 1
                    result.failures.append(
                        SyncFailure(
                            shipment_id,
                            tracking_number,
                            tracking.error or "Unknown error",
                            tracking.error_kind.value if tracking.error_kind else None,
                        )
                    )
                    logger.warning(f"Failed to sync {tracking_number}: {tracking.error} {tracking.error_details}")
                    continue

                if tracking.status_changed and tracking.status is not None:
                    result.updated += 1
                    previous = tracking.previous_status or old_status
                    result.details.append(
                        SyncDetail(
                            shipment_id=shipment_id,
                            tracking_number=tracking_number,
                            agency_id=agency_id,
                            old_status=previous.value,
                            new_status=tracking.status.status.value,
                            old_order_status=tracking.previous_order_status.value if tracking.previous_order_status else None,
                            new_order_status=tracking.order_status.value if tracking.order_status else None,
                        )
                    )
                    logger.info(f"{tracking_number}: {previous.value} -> {tracking.status.status.value}")
        finally:
            result.duration = int((time.time() - start) * 1000)
            self.last_result = result
            self._is_running = False
            self._current_label = None
            self._cancel_event.clear()

        logger.info(
            f"Sync completed ({label}): {result.processed} processed, {result.updated} updated, "
            f"{result.errors} errors in {result.duration}ms"
        )
        return result
