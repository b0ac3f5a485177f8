import pytest

from fintrack.core.errors import NotFoundError
from fintrack.features.session.local_store import JsonFileLocalStore, LAST_RENEWAL_PROMPT_KEY, MemoryLocalStore
from fintrack.features.session.registry import SessionRegistry
from fintrack.models.session import SessionState
from fintrack.tests.mocks import FakeAuthProvider, FakeProfileStore, make_record, make_settings


def make_registry(time_fn=None, **overrides):
    store = FakeProfileStore()
    store.put(make_record("u1", approved=True))
    auth = FakeAuthProvider({"alice": ("secret1", "u1")})
    return SessionRegistry(
        store=store, auth=auth, poll=False, settings_obj=make_settings(**overrides), time_fn=time_fn
    )


def test_create_and_get():
    registry = make_registry()

    controller = registry.create()

    assert registry.get(controller.session_id) is controller
    assert registry.find("missing") is None
    assert isinstance(controller.local, MemoryLocalStore)
    assert len(registry) == 1


def test_get_unknown_session():
    registry = make_registry()
    with pytest.raises(NotFoundError) as exc:
        registry.get(None)
    assert exc.value.code == "session_not_found"


def test_local_state_dir_uses_json_files(tmp_path):
    registry = make_registry(LOCAL_STATE_DIR=str(tmp_path))

    controller = registry.create()

    assert isinstance(controller.local, JsonFileLocalStore)


@pytest.mark.asyncio
async def test_discard_closes_controller():
    registry = make_registry()
    controller = registry.create()
    await controller.sign_in("alice", "secret1")
    assert controller.state is SessionState.ACTIVE

    await registry.discard(controller.session_id)

    assert len(registry) == 0
    assert controller.polling is False
    with pytest.raises(NotFoundError):
        registry.get(controller.session_id)


@pytest.mark.asyncio
async def test_close_all():
    registry = make_registry()
    for _ in range(3):
        registry.create()

    await registry.close_all()

    assert len(registry) == 0


class Ticker:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_discard_removes_session_state_file(tmp_path):
    registry = make_registry(LOCAL_STATE_DIR=str(tmp_path))
    controller = registry.create()
    await controller.sign_in("alice", "secret1")
    assert controller.local.path.exists()

    await registry.discard(controller.session_id)

    assert not controller.local.path.exists()


@pytest.mark.asyncio
async def test_user_store_outlives_sessions(tmp_path):
    registry = make_registry(LOCAL_STATE_DIR=str(tmp_path))
    controller = registry.create()
    await controller.sign_in("alice", "secret1")
    controller.dismiss_renewal_prompt()

    await registry.discard(controller.session_id)

    assert registry.user_store("u1") is registry.user_store("u1")
    path = tmp_path / "users" / "u1.json"
    assert JsonFileLocalStore(path).get(LAST_RENEWAL_PROMPT_KEY) is not None


@pytest.mark.asyncio
async def test_prune_discards_idle_sessions():
    ticker = Ticker()
    registry = make_registry(time_fn=ticker, SESSION_IDLE_TTL_SECONDS=60)
    idle = registry.create()
    await idle.sign_in("alice", "secret1")
    ticker.now += 30
    busy = registry.create()

    ticker.now += 40
    assert registry.find(busy.session_id) is busy
    assert await registry.prune() == 1

    assert len(registry) == 1
    assert registry.find(idle.session_id) is None
    assert idle.polling is False
    assert registry.get(busy.session_id) is busy


@pytest.mark.asyncio
async def test_zero_ttl_keeps_idle_sessions():
    ticker = Ticker()
    registry = make_registry(time_fn=ticker, SESSION_IDLE_TTL_SECONDS=0)
    registry.create()

    ticker.now += 10 ** 6
    assert await registry.prune() == 0
    assert len(registry) == 1
