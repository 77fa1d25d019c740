from sqlalchemy import Column, Integer, String, Numeric, DateTime, Text, ForeignKey, Enum, Boolean, Index, JSON, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
import uuid

from . import Base


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests / local runs).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls):
    return [m.value for m in enum_cls]


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    ATTEMPTED = "ATTEMPTED"
    CONFIRMED = "CONFIRMED"
    UPLOADED = "UPLOADED"
    DEPOSIT = "DEPOSIT"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RETURNED = "RETURNED"
    REJECTED = "REJECTED"
    ABANDONED = "ABANDONED"
    DELETED = "DELETED"
    ARCHIVED = "ARCHIVED"


class DeliveryStatus(str, enum.Enum):
    UPLOADED = "UPLOADED"
    DEPOSIT = "DEPOSIT"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RETURNED = "RETURNED"


# Shipments in these statuses are still moving and get polled by the sync.
ACTIVE_DELIVERY_STATUSES = (
    DeliveryStatus.UPLOADED,
    DeliveryStatus.DEPOSIT,
    DeliveryStatus.IN_TRANSIT,
)


class DeliveryStatusSource(str, enum.Enum):
    API = "api"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class CredentialsType(str, enum.Enum):
    USERNAME_PASSWORD = "username_password"
    EMAIL_PASSWORD = "email_password"
    API_KEY = "api_key"


class Order(Base):
    """Customer order. The delivery layer only reads identity and writes status."""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    customer_name = Column(Text, nullable=False)
    customer_phone = Column(String(32), nullable=False)
    customer_phone2 = Column(String(32), nullable=True)
    customer_address = Column(Text, nullable=True)
    customer_city = Column(Text, nullable=True)
    customer_governorate = Column(Text, nullable=True)

    product_summary = Column(Text, nullable=True)
    total_price = Column(Numeric(12, 3), nullable=False, default=0)
    notes = Column(Text, nullable=True)

    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)

    created_by = Column(String(36), nullable=True)
    confirmed_by_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    shipments = relationship("DeliveryShipment", back_populates="order")


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(64), nullable=False, index=True)
    description = Column(Text, nullable=False)

    user_id = Column(String(36), nullable=True, index=True)
    order_id = Column(String(36), nullable=True, index=True)

    extra_data = Column("metadata", JSONType, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class DeliveryAgency(Base):
    """Persisted configuration for one courier integration.

    Secret columns hold ``ENC:v1:`` ciphertexts (see crm_delivery.utils.crypto).
    """

    __tablename__ = "delivery_agencies"

    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    enabled = Column(Boolean, nullable=False, default=False)

    credentials_type = Column(Enum(CredentialsType, values_callable=_enum_values), nullable=False, default=CredentialsType.USERNAME_PASSWORD)
    credentials_username = Column(String(100), nullable=True)
    credentials_email = Column(String(100), nullable=True)
    credentials_password = Column(Text, nullable=True)
    credentials_api_key = Column(Text, nullable=True)

    settings = Column(JSONType, nullable=True)
    webhook_url = Column(String(500), nullable=True)
    polling_interval = Column(Integer, nullable=False, default=30)
    last_sync = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    shipments = relationship("DeliveryShipment", back_populates="agency")


class DeliveryShipment(Base):
    __tablename__ = "delivery_shipments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    agency_id = Column(String(50), ForeignKey("delivery_agencies.id"), nullable=False, index=True)

    tracking_number = Column(String(100), nullable=False, index=True)
    barcode = Column(String(100), nullable=True)

    status = Column(Enum(DeliveryStatus), nullable=False, default=DeliveryStatus.UPLOADED, index=True)
    last_status_update = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    print_url = Column(String(500), nullable=True)
    # Snapshot of the order at ship time; retries are rebuilt from it.
    order_snapshot = Column("metadata", JSONType, nullable=True)

    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    order = relationship("Order", back_populates="shipments")
    agency = relationship("DeliveryAgency", back_populates="shipments")
    status_logs = relationship(
        "DeliveryStatusLog",
        back_populates="shipment",
        order_by="DeliveryStatusLog.timestamp",
    )

    __table_args__ = (
        UniqueConstraint("agency_id", "tracking_number", name="uq_delivery_shipments_agency_tracking"),
        Index("idx_delivery_shipments_status_last_update", "status", "last_status_update"),
    )


class DeliveryStatusLog(Base):
    """Append-only audit trail of observed shipment status transitions."""

    __tablename__ = "delivery_status_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    shipment_id = Column(String(36), ForeignKey("delivery_shipments.id"), nullable=False, index=True)

    previous_status = Column(Enum(DeliveryStatus), nullable=True)
    status = Column(Enum(DeliveryStatus), nullable=False)
    status_code = Column(Integer, nullable=True)  # raw courier code, when numeric
    message = Column(Text, nullable=True)

    source = Column(Enum(DeliveryStatusSource, values_callable=_enum_values), nullable=False, default=DeliveryStatusSource.API)
    raw_data = Column(JSONType, nullable=True)
    user_id = Column(String(36), nullable=True)

    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    shipment = relationship("DeliveryShipment", back_populates="status_logs")
