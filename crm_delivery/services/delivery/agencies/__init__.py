from typing import List

from .best_delivery import BestDeliveryAgency


def builtin_agencies() -> List:
    """Adapters registered on every startup, before any DB configuration."""

    return [BestDeliveryAgency()]


__all__ = [
    "BestDeliveryAgency",
    "builtin_agencies",
]
