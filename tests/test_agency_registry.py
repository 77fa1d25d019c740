import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from crm_delivery.models_sqlalchemy.models import DeliveryAgency
from crm_delivery.services.delivery.agency_registry import AgencyRegistry, merge_config
from crm_delivery.services.delivery.types import AgencyConfig, DeliveryCredentials
from crm_delivery.utils.crypto import is_encrypted

from conftest import FAKE_AGENCY_ID, FakeCourier


class FailingSession:
    """Session stand-in whose queries and commits fail like a dropped connection."""

    def query(self, *args, **kwargs):
        raise OperationalError("SELECT * FROM delivery_agencies", {}, Exception("database is down"))

    def get(self, *args, **kwargs):
        return None

    def add(self, obj):
        pass

    def commit(self):
        raise OperationalError("UPDATE delivery_agencies", {}, Exception("database is down"))

    def rollback(self):
        pass

    def close(self):
        pass


def _registry(session_factory, adapter=None):
    adapter = adapter or FakeCourier()
    return AgencyRegistry(session_factory, lambda: [adapter])


@pytest.mark.asyncio
async def test_concurrent_initialization_runs_once(session_factory, add_agency):
    add_agency()
    calls = {"adapters": 0, "sessions": 0}

    def adapters():
        calls["adapters"] += 1
        return [FakeCourier()]

    def sessions():
        calls["sessions"] += 1
        return session_factory()

    registry = AgencyRegistry(sessions, adapters)
    await asyncio.gather(*(registry.ensure_initialized() for _ in range(10)))

    assert registry.initialized
    assert calls == {"adapters": 1, "sessions": 1}
    assert registry.is_agency_enabled(FAKE_AGENCY_ID)


@pytest.mark.asyncio
async def test_load_failure_leaves_every_agency_disabled():
    registry = AgencyRegistry(FailingSession, lambda: [FakeCourier()])

    await registry.ensure_initialized()

    assert registry.initialized
    assert registry.get_agency(FAKE_AGENCY_ID) is not None
    assert registry.get_agency_config(FAKE_AGENCY_ID) is None
    assert not registry.is_agency_enabled(FAKE_AGENCY_ID)
    assert registry.get_enabled_agencies() == []
    assert "database is down" in registry.load_error


@pytest.mark.asyncio
async def test_config_is_loaded_and_decrypted(session_factory, add_agency):
    add_agency(password="s3cret-pass")
    registry = _registry(session_factory)

    await registry.ensure_initialized()

    config = registry.get_agency_config(FAKE_AGENCY_ID)
    assert config.enabled
    assert config.credentials.username == "shop"
    assert config.credentials.password == "s3cret-pass"


@pytest.mark.asyncio
async def test_update_writes_through_and_encrypts_at_rest(session_factory, add_agency):
    add_agency(enabled=False)
    registry = _registry(session_factory)

    config = await registry.update_agency_config(
        FAKE_AGENCY_ID,
        {"enabled": True, "polling_interval": 15, "credentials": {"username": "shop2", "password": "new-pass-123"}},
    )

    assert config.enabled
    assert registry.is_agency_enabled(FAKE_AGENCY_ID)

    db = session_factory()
    try:
        row = db.get(DeliveryAgency, FAKE_AGENCY_ID)
        assert row.enabled is True
        assert row.polling_interval == 15
        assert row.credentials_username == "shop2"
        assert is_encrypted(row.credentials_password)
        assert "new-pass-123" not in row.credentials_password
    finally:
        db.close()

    # A fresh registry over the same database sees the saved values.
    reloaded = _registry(session_factory)
    await reloaded.ensure_initialized()
    assert reloaded.get_agency_config(FAKE_AGENCY_ID).credentials.password == "new-pass-123"
    assert reloaded.is_agency_enabled(FAKE_AGENCY_ID)


@pytest.mark.asyncio
async def test_update_creates_row_for_adapter_without_config(session_factory):
    registry = _registry(session_factory)

    config = await registry.update_agency_config(FAKE_AGENCY_ID, {"enabled": True})

    assert config.name == "Fake Courier"
    db = session_factory()
    try:
        assert db.get(DeliveryAgency, FAKE_AGENCY_ID).enabled is True
    finally:
        db.close()


@pytest.mark.asyncio
async def test_update_of_unknown_agency_returns_none(session_factory):
    registry = _registry(session_factory)

    assert await registry.update_agency_config("nope", {"enabled": True}) is None


@pytest.mark.asyncio
async def test_failed_persist_keeps_previous_config(session_factory, add_agency):
    """Memory is only swapped after the database accepted the change."""

    add_agency(enabled=False)
    registry = _registry(session_factory)
    await registry.ensure_initialized()
    registry._session_factory = FailingSession

    with pytest.raises(OperationalError):
        await registry.update_agency_config(FAKE_AGENCY_ID, {"enabled": True})

    assert not registry.is_agency_enabled(FAKE_AGENCY_ID)


@pytest.mark.asyncio
async def test_set_last_sync_is_persisted(session_factory, add_agency):
    add_agency()
    registry = _registry(session_factory)
    await registry.ensure_initialized()

    await registry.set_last_sync(FAKE_AGENCY_ID)

    assert registry.get_agency_config(FAKE_AGENCY_ID).last_sync is not None
    db = session_factory()
    try:
        assert db.get(DeliveryAgency, FAKE_AGENCY_ID).last_sync is not None
    finally:
        db.close()


@pytest.mark.asyncio
async def test_agencies_by_region_only_lists_enabled_matches(session_factory, add_agency):
    add_agency()
    registry = _registry(session_factory)
    await registry.ensure_initialized()

    assert [a.id for a, _ in registry.get_agencies_by_region("sfax")] == [FAKE_AGENCY_ID]
    assert registry.get_agencies_by_region("Tozeur") == []


def test_merge_keeps_secrets_left_out_of_the_update():
    existing = AgencyConfig(
        id="x",
        name="X",
        enabled=True,
        credentials=DeliveryCredentials(username="shop", password="keep-me"),
        settings={"zone": "north"},
    )

    merged = merge_config(existing, {"enabled": False, "credentials": {"username": "shop2", "password": None}})

    assert merged.enabled is False
    assert merged.credentials.username == "shop2"
    assert merged.credentials.password == "keep-me"
    assert merged.settings == {"zone": "north"}
    # The original is untouched.
    assert existing.enabled is True
    assert existing.credentials.username == "shop"
