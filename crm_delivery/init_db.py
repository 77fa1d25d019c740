from sqlalchemy.orm import Session

from crm_delivery.models_sqlalchemy import Base, SessionLocal, engine
from crm_delivery.models_sqlalchemy.models import CredentialsType, DeliveryAgency
from crm_delivery.services.delivery.agencies import builtin_agencies
from crm_delivery.utils.logger import logger


def seed_delivery_agencies(db: Session) -> int:
    """Insert a disabled, unconfigured row for each built-in agency that has none."""

    created = 0
    for adapter in builtin_agencies():
        if db.get(DeliveryAgency, adapter.id) is not None:
            continue
        db.add(
            DeliveryAgency(
                id=adapter.id,
                name=adapter.name,
                enabled=False,
                credentials_type=adapter.credentials_type or CredentialsType.USERNAME_PASSWORD,
                settings={},
                polling_interval=30,
            )
        )
        created += 1
    db.commit()
    return created


def init_db(bind=None) -> None:
    bind = bind or engine
    logger.info("Creating delivery tables...")
    Base.metadata.create_all(bind=bind)

    db = SessionLocal(bind=bind)
    try:
        created = seed_delivery_agencies(db)
        logger.info(f"Seeded {created} delivery agency row(s)")
    finally:
        db.close()


if __name__ == "__main__":
    init_db()
