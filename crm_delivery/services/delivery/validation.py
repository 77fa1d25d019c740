import math
import re
from typing import List, Optional, Sequence

from crm_delivery.models_sqlalchemy.models import CredentialsType
from crm_delivery.services.delivery.types import DeliveryCredentials, DeliveryOrder


PHONE_RE = re.compile(r"^[\d\s+().-]+$")


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def validate_credentials(
    credentials: Optional[DeliveryCredentials],
    expected_type: Optional[CredentialsType] = None,
) -> List[str]:
    """Return every problem with ``credentials``; an empty list means usable."""

    if credentials is None:
        return ["Credentials are required"]

    errors: List[str] = []
    ctype = credentials.type
    if expected_type is not None and ctype != expected_type:
        errors.append(f"Invalid credential type: expected {expected_type.value}")
        return errors

    if ctype == CredentialsType.USERNAME_PASSWORD:
        if _blank(credentials.username):
            errors.append("Username is required")
        if _blank(credentials.password):
            errors.append("Password is required")
    elif ctype == CredentialsType.EMAIL_PASSWORD:
        if _blank(credentials.email):
            errors.append("Email is required")
        if _blank(credentials.password):
            errors.append("Password is required")
    elif ctype == CredentialsType.API_KEY:
        if _blank(credentials.api_key):
            errors.append("API key is required")
    else:
        errors.append("Invalid credential type")

    return errors


def _normalize_region(value: str) -> str:
    return " ".join(value.split()).casefold()


def is_region_supported(region: Optional[str], supported_regions: Sequence[str]) -> bool:
    if not supported_regions:
        return True
    if _blank(region):
        return False
    wanted = _normalize_region(region)
    return any(_normalize_region(r) == wanted for r in supported_regions)


def validate_order(
    order: DeliveryOrder,
    agency_name: str,
    supported_regions: Sequence[str] = (),
) -> List[str]:
    """Collect all order problems before anything is sent to a courier.

    The region check uses the governorate when present and falls back to the
    city, and only applies when the agency declares a region list.
    """

    errors: List[str] = []

    if _blank(order.customer_name):
        errors.append("Customer name is required")

    if _blank(order.customer_phone):
        errors.append("Customer phone is required")
    elif not PHONE_RE.match(order.customer_phone.strip()):
        errors.append("Invalid phone number format")

    if order.customer_phone2 and not PHONE_RE.match(order.customer_phone2.strip()):
        errors.append("Invalid secondary phone number format")

    if _blank(order.customer_city):
        errors.append("Customer city is required")

    if _blank(order.customer_address):
        errors.append("Customer address is required")

    if _blank(order.product_name):
        errors.append("Product name is required")

    if order.price is None or not math.isfinite(order.price) or order.price <= 0:
        errors.append("Valid price is required")

    region = order.region
    if supported_regions and not _blank(region) and not is_region_supported(region, supported_regions):
        errors.append(f"Region {region} is not supported by {agency_name}")

    return errors
