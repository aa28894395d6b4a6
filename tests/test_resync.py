import dataclasses
from datetime import timedelta

import pytest

from qqbridge.bridge import resync as resync_module
from qqbridge.bridge.resync import ResyncEngine
from qqbridge.core.elements import TextElement
from qqbridge.core.identity import UID, PortalKey
from qqbridge.utils.helpers import utc_now
from tests.fakes import ALICE, BOB, GROUP, ME, BridgeEnv, group_message, login_alice, make_env

GROUP_KEY = PortalKey.of(UID.group(GROUP), UID.user(ME))


@pytest.fixture
async def eager_env(tmp_path):
    env = make_env(tmp_path, resync_min_interval_seconds=0)
    yield env
    await env.bridge.stop()


async def test_enqueue_skips_recent_and_coalesces(env: BridgeEnv) -> None:
    engine = env.bridge.get_user_by_mxid(ALICE).resync
    fresh = env.bridge.get_puppet_by_uid(UID.user("40004"))
    fresh.record.last_sync = utc_now()
    stale = env.bridge.get_puppet_by_uid(UID.user(BOB))
    stale.record.last_sync = utc_now() - timedelta(days=30)

    assert not engine.enqueue_puppet(fresh)
    assert engine.enqueue_puppet(stale)
    assert not engine.enqueue_puppet(stale)
    assert len(engine) == 1


async def test_only_group_portals_are_queued(env: BridgeEnv) -> None:
    engine = env.bridge.get_user_by_mxid(ALICE).resync
    private = env.bridge.get_portal_by_key(PortalKey.of(UID.user(BOB), UID.user(ME)))
    group = env.bridge.get_portal_by_key(GROUP_KEY)

    assert not engine.enqueue_portal(private)
    assert engine.enqueue_portal(group)
    assert len(engine) == 1


async def test_sweep_refreshes_queued_group_and_contact(eager_env: BridgeEnv) -> None:
    user, client = await login_alice(eager_env)
    await user.receive(group_message(1, TextElement(content="hi")))
    await eager_env.settle()
    portal = eager_env.bridge.get_portal_by_key(GROUP_KEY)
    bob = eager_env.bridge.get_puppet_by_uid(UID.user(BOB))
    user.enqueue_portal_resync(portal)
    user.enqueue_puppet_resync(bob)

    client.groups[GROUP] = dataclasses.replace(client.groups[GROUP], name="Renamed")
    client.add_user(BOB, "Bob", "Bobby")

    assert await user.resync.sweep() == 2
    assert len(user.resync) == 0
    room = eager_env.hs.rooms[portal.mxid]
    assert room.state[("m.room.name", "")] == {"name": "Renamed"}
    assert bob.displayname == "Bobby (QQ)"
    assert await user.resync.sweep() == 0


async def test_sweep_counts_groups_without_a_room(eager_env: BridgeEnv) -> None:
    user, _ = await login_alice(eager_env)
    portal = eager_env.bridge.get_portal_by_key(GROUP_KEY)
    assert user.enqueue_portal_resync(portal)
    assert await user.resync.sweep() == 1
    assert portal.mxid is None


async def test_sweep_waits_for_login(env: BridgeEnv) -> None:
    user = env.bridge.get_user_by_mxid(ALICE)
    assert user.enqueue_portal_resync(env.bridge.get_portal_by_key(GROUP_KEY))

    assert await user.resync.sweep() == 0
    assert len(user.resync) == 1


async def test_first_wake_delay_is_interval_minus_jitter(env: BridgeEnv, monkeypatch: pytest.MonkeyPatch) -> None:
    engine = ResyncEngine(
        env.bridge.get_user_by_mxid(ALICE),
        min_interval=timedelta(days=7),
        interval=timedelta(hours=4),
        jitter=timedelta(hours=1),
    )
    for _ in range(20):
        assert 3 * 3600 <= engine.first_wake_delay() <= 4 * 3600

    monkeypatch.setattr(resync_module.random, "random", lambda: 1.0)
    assert engine.first_wake_delay() == 3 * 3600
    monkeypatch.setattr(resync_module.random, "random", lambda: 0.0)
    assert engine.first_wake_delay() == 4 * 3600
