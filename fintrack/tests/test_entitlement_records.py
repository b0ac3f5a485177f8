"""Entitlement Record persistence and the profile store adapter."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from fintrack.core.database import get_db_session, user_credentials, user_data, user_entitlements
from fintrack.core.errors import ProfileNotFoundError, StoreUnavailableError
from fintrack.features.entitlements import service
from fintrack.features.users.service import register_user
from fintrack.models.entitlement import EntitlementRecord, UserProfile, SECONDS_PER_DAY
from fintrack.tests.mocks import FakeAuthProvider

NOW = datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc)


def test_create_uses_default_grant():
    record = service.create_entitlement("u1", username="alice", now=NOW)

    assert record.access_duration_seconds == 30 * SECONDS_PER_DAY
    assert record.granted_at == NOW
    assert record.is_approved is False
    assert record.revision == 1


def test_admin_record_has_no_window():
    record = service.create_entitlement("root", username="root", is_admin=True, now=NOW)
    assert record.access_duration_seconds is None
    assert record.is_exempt is True


def test_get_missing_record_raises_profile_not_found():
    with pytest.raises(ProfileNotFoundError):
        service.get_entitlement("nobody")


def test_zero_adjustment_is_a_no_op():
    before = service.create_entitlement("u1", now=NOW)
    after = service.adjust_duration("u1", 0)

    assert after.access_duration_seconds == before.access_duration_seconds
    assert after.granted_at == before.granted_at
    assert after.revision == before.revision


def test_add_then_remove_restores_duration_exactly():
    before = service.create_entitlement("u1", now=NOW)
    service.adjust_duration("u1", 7 * SECONDS_PER_DAY + 13)
    after = service.adjust_duration("u1", -(7 * SECONDS_PER_DAY + 13))

    assert after.access_duration_seconds == before.access_duration_seconds
    assert after.granted_at == before.granted_at
    assert after.revision == before.revision + 2


def test_huge_removal_clamps_to_zero():
    service.create_entitlement("u1", now=NOW)
    record = service.adjust_duration("u1", -10**12)
    assert record.access_duration_seconds == 0


def test_adjust_gives_anchorless_record_an_anchor():
    service.create_entitlement("root", is_admin=True, now=NOW)
    with get_db_session() as session:
        session.execute(
            user_entitlements.update()
            .where(user_entitlements.c.user_id == "root")
            .values(granted_at=None)
        )
    record = service.adjust_duration("root", SECONDS_PER_DAY)
    assert record.access_duration_seconds == SECONDS_PER_DAY
    assert record.granted_at is not None


def test_write_duration_sets_both_fields_and_bumps_revision():
    service.create_entitlement("u1", now=NOW)
    anchor = NOW + timedelta(days=3)
    record = service.write_duration("u1", 10 * SECONDS_PER_DAY, anchor)

    assert record.access_duration_seconds == 10 * SECONDS_PER_DAY
    assert record.granted_at == anchor
    assert record.revision == 2


def test_write_duration_on_missing_user():
    with pytest.raises(ProfileNotFoundError):
        service.write_duration("ghost", 10, NOW)


def test_find_by_cpf_matches_digits_only():
    service.create_entitlement("u1", profile=UserProfile(cpf="123.456.789-00", phone="119999"), now=NOW)

    found = service.find_by_cpf("12345678900")

    assert found.user_id == "u1"
    assert found.profile.cpf == "12345678900"
    assert service.find_by_cpf("000.000.000-00") is None
    assert service.find_by_cpf("---") is None


def test_malformed_values_from_store_are_clamped():
    record = EntitlementRecord(user_id="u1", access_duration_seconds=-50, granted_at="not a date")
    assert record.access_duration_seconds == 0
    assert record.granted_at is None

    parsed = EntitlementRecord(user_id="u1", access_duration_seconds="86400", granted_at="2024-03-10T10:00:00Z")
    assert parsed.access_duration_seconds == SECONDS_PER_DAY
    assert parsed.granted_at == NOW


@pytest.mark.asyncio
async def test_delete_user_removes_all_application_data():
    auth = FakeAuthProvider()
    record = await register_user(auth, "alice", "secret1", now=NOW)
    with get_db_session() as session:
        session.execute(
            user_credentials.insert().values(
                user_id=record.user_id, username="alice", password_hash="x"
            )
        )

    service.delete_user(record.user_id)

    with pytest.raises(ProfileNotFoundError):
        service.get_entitlement(record.user_id)
    with get_db_session() as session:
        assert session.execute(select(user_data).where(user_data.c.user_id == record.user_id)).first() is None
        assert (
            session.execute(select(user_credentials).where(user_credentials.c.user_id == record.user_id)).first()
            is None
        )


# Store adapter ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_store_publishes_committed_writes(store, hub):
    service.create_entitlement("u1", now=NOW)
    received = []

    async def on_change(change):
        received.append(change)

    store.subscribe("u1", on_change)
    await store.adjust_duration("u1", SECONDS_PER_DAY)
    await store.adjust_duration("u1", 0)
    await store.set_approval("u1", True)

    assert [c.revision for c in received] == [2, 3]
    assert received[0].record.access_duration_seconds == 31 * SECONDS_PER_DAY
    assert received[1].record.is_approved is True


@pytest.mark.asyncio
async def test_store_publishes_deletion_with_next_revision(store):
    service.create_entitlement("u1", now=NOW)
    received = []

    async def on_change(change):
        received.append(change)

    store.subscribe("u1", on_change)
    await store.delete_user("u1")

    assert len(received) == 1
    assert received[0].deleted is True
    assert received[0].record is None
    assert received[0].revision == 2


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others(store):
    service.create_entitlement("u1", now=NOW)
    received = []

    async def broken(change):
        raise RuntimeError("boom")

    async def healthy(change):
        received.append(change.revision)

    store.subscribe("u1", broken)
    store.subscribe("u1", healthy)
    await store.adjust_duration("u1", 60)

    assert received == [2]


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(store, hub):
    async def on_change(change):
        pass

    subscription = store.subscribe("u1", on_change)
    assert hub.subscriber_count("u1") == 1
    subscription.unsubscribe()
    subscription.unsubscribe()
    assert hub.subscriber_count("u1") == 0


@pytest.mark.asyncio
async def test_driver_errors_surface_as_store_unavailable(store, monkeypatch):
    def down(user_id):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(service, "get_entitlement", down)

    with pytest.raises(StoreUnavailableError):
        await store.get_entitlement("u1")


@pytest.mark.asyncio
async def test_store_reports_missing_profile(store):
    with pytest.raises(ProfileNotFoundError):
        await store.get_entitlement("nobody")
