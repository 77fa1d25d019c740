"""Scheduled courier status polling.

Every tick the worker looks at the enabled agencies and runs a sync pass for
each one whose ``polling_interval`` (minutes) has elapsed since its
``last_sync``. Manual syncs from the API share the same single-run guard, so
a tick that lands during a manual run is skipped.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from crm_delivery.config import settings
from crm_delivery.services.delivery.sync_service import DeliverySyncService, SyncAlreadyRunningError
from crm_delivery.services.delivery.types import AgencyConfig
from crm_delivery.utils.logger import logger


def _is_due(config: AgencyConfig, now: datetime) -> bool:
    if config.last_sync is None:
        return True
    last = config.last_sync
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return now - last >= timedelta(minutes=config.polling_interval or 30)


async def run_due_agency_syncs_once(sync_service: DeliverySyncService, now: Optional[datetime] = None) -> List[str]:
    """Sync every enabled agency that is due. Returns the agency ids synced."""

    now = now or datetime.now(timezone.utc)
    registry = sync_service.registry
    await registry.ensure_initialized()

    synced: List[str] = []
    for adapter, config in registry.get_enabled_agencies():
        if not _is_due(config, now):
            continue
        try:
            result = await sync_service.sync_shipments_by_agency(adapter.id)
        except SyncAlreadyRunningError:
            logger.info("[delivery-sync] Another sync is running; skipping this tick")
            break
        synced.append(adapter.id)
        logger.info(
            "[delivery-sync] %s: processed=%s updated=%s errors=%s duration_ms=%s",
            adapter.id,
            result.processed,
            result.updated,
            result.errors,
            result.duration,
        )
    return synced


async def run_delivery_sync_worker_loop(
    sync_service: DeliverySyncService,
    interval_sec: Optional[int] = None,
) -> None:
    interval_sec = interval_sec or settings.DELIVERY_SYNC_TICK_SECONDS
    logger.info("[delivery-sync] Delivery sync worker loop started (tick=%s seconds)", interval_sec)
    while True:
        try:
            await run_due_agency_syncs_once(sync_service)
        except Exception as exc:
            logger.error("[delivery-sync] tick failed: %s", exc, exc_info=True)
        await asyncio.sleep(interval_sec)
