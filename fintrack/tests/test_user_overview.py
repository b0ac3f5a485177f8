from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from fintrack.core.database import get_db_session, user_data
from fintrack.core.errors import ValidationError
from fintrack.features.entitlements import service
from fintrack.features.users.service import access_status, list_user_overview, register_user, user_stats
from fintrack.models.entitlement import UserProfile
from fintrack.tests.mocks import FakeAuthProvider, make_record

NOW = datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_register_creates_default_grant_and_empty_data():
    record = await register_user(
        FakeAuthProvider(), "alice", "secret1", UserProfile(cpf="123.456.789-00", phone="119"), now=NOW
    )

    assert record.access_duration_seconds == 30 * 86400
    assert record.granted_at == NOW
    assert record.is_approved is False
    assert record.profile.cpf == "12345678900"
    with get_db_session() as session:
        row = session.execute(select(user_data).where(user_data.c.user_id == record.user_id)).first()
    assert row.payload == {"transactions": [], "categories": []}


@pytest.mark.asyncio
async def test_register_rejects_cpf_without_digits():
    auth = FakeAuthProvider()
    with pytest.raises(ValidationError):
        await register_user(auth, "alice", "secret1", UserProfile(cpf="abc", phone=""))
    assert auth.users == {}


def test_access_status_labels():
    assert access_status(make_record(admin=True, days=None), NOW)["text"] == "Permanent access"
    assert access_status(make_record(approved=True), NOW)["text"] == "Permanent access"
    assert access_status(make_record(days=None), NOW)["text"] == "No access period"
    assert access_status(make_record(granted_days_ago=31), NOW)["tier"] == "expired"

    status = access_status(make_record(granted_days_ago=25), NOW)
    assert status == {"text": "5 days remaining", "tier": "warning", "days_remaining": 5}


def test_user_stats():
    records = [
        make_record("a", admin=True, days=None, approved=True),
        make_record("b", approved=True),
        make_record("c", granted_days_ago=10),
        make_record("d", granted_days_ago=40),
    ]

    stats = user_stats(records, NOW)

    assert stats == {"total": 4, "approved": 2, "pending": 2, "within_window": 2, "expired": 1}


def test_overview_lists_every_user():
    service.create_entitlement("u1", username="alice", now=NOW - timedelta(days=2))
    service.create_entitlement("u2", username="bob", now=NOW - timedelta(days=40))

    overview = list_user_overview(NOW)

    by_name = {u["username"]: u for u in overview["users"]}
    assert by_name["alice"]["status"]["days_remaining"] == 28
    assert by_name["bob"]["status"]["text"] == "Access expired"
    assert overview["stats"]["total"] == 2
    assert overview["stats"]["expired"] == 1
