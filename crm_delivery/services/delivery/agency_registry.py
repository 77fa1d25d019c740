from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_delivery.models_sqlalchemy.models import CredentialsType, DeliveryAgency
from crm_delivery.services.delivery.agencies import builtin_agencies
from crm_delivery.services.delivery.types import AgencyAdapter, AgencyConfig, DeliveryCredentials
from crm_delivery.services.delivery.validation import is_region_supported
from crm_delivery.utils.crypto import decrypt, encrypt
from crm_delivery.utils.logger import logger


_CREDENTIAL_FIELDS = ("username", "email", "password", "api_key")


def _config_from_row(row: DeliveryAgency) -> AgencyConfig:
    return AgencyConfig(
        id=row.id,
        name=row.name,
        enabled=bool(row.enabled),
        credentials=DeliveryCredentials(
            type=row.credentials_type or CredentialsType.USERNAME_PASSWORD,
            username=row.credentials_username,
            email=row.credentials_email,
            password=decrypt(row.credentials_password),
            api_key=decrypt(row.credentials_api_key),
        ),
        settings=dict(row.settings or {}),
        webhook_url=row.webhook_url,
        polling_interval=row.polling_interval or 30,
        last_sync=row.last_sync,
    )


def _apply_config_to_row(row: DeliveryAgency, config: AgencyConfig) -> None:
    row.name = config.name
    row.enabled = config.enabled
    row.credentials_type = config.credentials.type
    row.credentials_username = config.credentials.username or None
    row.credentials_email = config.credentials.email or None
    row.credentials_password = encrypt(config.credentials.password) or None
    row.credentials_api_key = encrypt(config.credentials.api_key) or None
    row.settings = config.settings
    row.webhook_url = config.webhook_url or None
    row.polling_interval = config.polling_interval or 30
    row.last_sync = config.last_sync


def merge_config(existing: AgencyConfig, update: Mapping[str, Any]) -> AgencyConfig:
    """Overlay a partial update on ``existing`` without mutating it.

    Credential fields left out or set to ``None`` keep their current value, so
    a client that only echoes masked secrets back does not wipe them.
    """

    merged = replace(existing, credentials=replace(existing.credentials), settings=dict(existing.settings))

    for key in ("name", "enabled", "webhook_url", "polling_interval"):
        if key in update and update[key] is not None:
            setattr(merged, key, update[key])

    if update.get("settings") is not None:
        merged.settings = dict(update["settings"])

    creds_update = update.get("credentials") or {}
    if creds_update.get("type") is not None:
        merged.credentials.type = CredentialsType(creds_update["type"])
    for field_name in _CREDENTIAL_FIELDS:
        value = creds_update.get(field_name)
        if value is not None:
            setattr(merged.credentials, field_name, value)

    return merged


class AgencyRegistry:
    """Catalog of courier adapters and their persisted configuration.

    Built explicitly and handed to the services; nothing here is a global.
    The first caller of :meth:`ensure_initialized` registers the built-in
    adapters and loads configs from the DB; concurrent callers wait for it.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        adapters_factory: Callable[[], Iterable[AgencyAdapter]] = builtin_agencies,
    ):
        self._session_factory = session_factory
        self._adapters_factory = adapters_factory
        self._agencies: Dict[str, AgencyAdapter] = {}
        self._configs: Dict[str, AgencyConfig] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._update_lock = asyncio.Lock()
        self.load_error: Optional[str] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            logger.info("Initializing delivery agency registry...")
            for adapter in self._adapters_factory():
                self._agencies[adapter.id] = adapter
                logger.info(f"Registered delivery agency: {adapter.name}")
            self._load_configurations()
            self._initialized = True
            logger.info(
                f"Delivery agency registry initialized: {len(self._agencies)} adapter(s), {len(self._configs)} config(s)"
            )

    def _load_configurations(self) -> None:
        db = self._session_factory()
        try:
            rows = db.query(DeliveryAgency).all()
            for row in rows:
                self._configs[row.id] = _config_from_row(row)
                logger.info(f"Loaded config for delivery agency: {row.name}")
            self.load_error = None
        except SQLAlchemyError as e:
            # Adapters stay registered; with no config every agency reads as disabled.
            self._configs = {}
            self.load_error = str(e)
            logger.error(f"Failed to load delivery agency configurations: {e}")
        finally:
            db.close()

    def register_agency(self, adapter: AgencyAdapter, config: Optional[AgencyConfig] = None) -> None:
        self._agencies[adapter.id] = adapter
        if config is not None:
            self._configs[adapter.id] = config
        logger.info(f"Registered delivery agency: {adapter.name}")

    def get_agency(self, agency_id: str) -> Optional[AgencyAdapter]:
        return self._agencies.get(agency_id)

    def get_agency_config(self, agency_id: str) -> Optional[AgencyConfig]:
        return self._configs.get(agency_id)

    def get_all_agencies(self) -> List[AgencyAdapter]:
        return list(self._agencies.values())

    def is_agency_enabled(self, agency_id: str) -> bool:
        config = self._configs.get(agency_id)
        return bool(config and config.enabled)

    def get_enabled_agencies(self) -> List[Tuple[AgencyAdapter, AgencyConfig]]:
        enabled: List[Tuple[AgencyAdapter, AgencyConfig]] = []
        for agency_id, adapter in self._agencies.items():
            config = self._configs.get(agency_id)
            if config and config.enabled:
                enabled.append((adapter, config))
        return enabled

    def get_agencies_by_region(self, region: str) -> List[Tuple[AgencyAdapter, AgencyConfig]]:
        return [
            (adapter, config)
            for adapter, config in self.get_enabled_agencies()
            if is_region_supported(region, adapter.supported_regions)
        ]

    async def update_agency_config(self, agency_id: str, update: Mapping[str, Any]) -> Optional[AgencyConfig]:
        """Merge ``update`` into the agency config and persist it.

        The DB is written first; the in-memory config is swapped only after the
        commit succeeds. Persistence failures propagate to the caller.
        Returns ``None`` for an unknown agency.
        """

        await self.ensure_initialized()
        async with self._update_lock:
            adapter = self._agencies.get(agency_id)
            existing = self._configs.get(agency_id)
            if existing is None:
                if adapter is None:
                    logger.error(f"Agency config not found: {agency_id}")
                    return None
                existing = AgencyConfig(
                    id=agency_id,
                    name=adapter.name,
                    credentials=DeliveryCredentials(type=adapter.credentials_type),
                )

            merged = merge_config(existing, update)
            self._persist(merged)
            self._configs[agency_id] = merged
            logger.info(f"Updated config for delivery agency: {agency_id} (enabled={merged.enabled})")
            return merged

    async def set_last_sync(self, agency_id: str, when: Optional[datetime] = None) -> None:
        when = when or datetime.now(timezone.utc)
        async with self._update_lock:
            existing = self._configs.get(agency_id)
            if existing is None:
                return
            merged = replace(existing, last_sync=when)
            try:
                self._persist(merged)
            except SQLAlchemyError as e:
                logger.error(f"Failed to record last sync for {agency_id}: {e}")
                return
            self._configs[agency_id] = merged

    def _persist(self, config: AgencyConfig) -> None:
        db = self._session_factory()
        try:
            row = db.get(DeliveryAgency, config.id)
            if row is None:
                row = DeliveryAgency(id=config.id)
                db.add(row)
            _apply_config_to_row(row, config)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to update delivery agency config in database: {config.id}: {e}")
            raise
        finally:
            db.close()
