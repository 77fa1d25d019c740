"""
Background workers for the delivery integration.

Workers:
- delivery_sync_worker: polls couriers for active shipments of each enabled
  agency once its polling interval has elapsed
"""

from crm_delivery.workers.delivery_sync_worker import run_delivery_sync_worker_loop, run_due_agency_syncs_once

__all__ = [
    "run_delivery_sync_worker_loop",
    "run_due_agency_syncs_once",
]
