import pytest

from qqbridge.core.identity import UID
from qqbridge.core.models import ContactInfo, NameQuality
from tests.fakes import ALICE, BOB, BOB_GHOST, ME, BridgeEnv, login_alice, make_env, matrix_event


async def test_puppet_mxid_round_trip(env: BridgeEnv) -> None:
    assert env.bridge.format_puppet_mxid(UID.user(BOB)) == BOB_GHOST
    assert env.bridge.parse_puppet_mxid(BOB_GHOST) == UID.user(BOB)
    assert env.bridge.parse_puppet_mxid("@qq_abc:test") is None
    assert env.bridge.parse_puppet_mxid(f"@qq_{BOB}:other.server") is None
    assert env.bridge.parse_puppet_mxid(ALICE) is None


@pytest.mark.parametrize(
    ("contact", "expected"),
    [
        (ContactInfo(uin=BOB, name="Bob", remark="Bobby"), ("Bobby (QQ)", NameQuality.REMARK)),
        (ContactInfo(uin=BOB, name="Bob"), ("Bob (QQ)", NameQuality.NAME)),
        (ContactInfo(uin=BOB), (f"{BOB} (QQ)", NameQuality.UIN)),
    ],
)
async def test_displayname_prefers_remark_then_name(env: BridgeEnv, contact: ContactInfo, expected) -> None:
    assert env.bridge.format_displayname(contact) == expected


async def test_broken_displayname_template_falls_back_to_display(tmp_path) -> None:
    env = make_env(tmp_path, displayname_template="{display} {missing}")
    assert env.bridge.format_displayname(ContactInfo(uin=BOB, name="Bob")) == ("Bob", NameQuality.NAME)
    await env.bridge.stop()


async def test_resolve_uin_and_mention(env: BridgeEnv) -> None:
    assert env.bridge.resolve_uin(BOB_GHOST) == BOB
    assert env.bridge.resolve_uin("@stranger:test") is None

    await login_alice(env)
    assert env.bridge.resolve_uin(ALICE) == ME
    assert await env.bridge.resolve_mention(ME) == (ALICE, ME)

    bob = env.bridge.get_puppet_by_uid(UID.user(BOB))
    bob.record.displayname = "Bob (QQ)"
    assert await env.bridge.resolve_mention(BOB) == (BOB_GHOST, "Bob (QQ)")


async def test_start_sets_up_bot_profile(env: BridgeEnv) -> None:
    await env.bridge.start()
    bot = env.bridge.config.bot_mxid
    assert bot in env.hs.registered
    assert env.hs.profiles[bot]["displayname"] == env.bridge.config.appservice.bot_displayname


async def test_start_restores_logged_in_users_and_double_puppets(env: BridgeEnv) -> None:
    await login_alice(env)
    env.bridge.get_puppet_by_uid(UID.user(ME)).set_custom_mxid(ALICE)
    restarted = make_env(env.store.db_path.parent)

    await restarted.bridge.start()

    assert restarted.bridge.get_user_by_uin(ME).mxid == ALICE
    assert restarted.bridge.get_puppet_by_custom_mxid(ALICE).uid == UID.user(ME)
    await restarted.bridge.stop()


async def test_bridge_users_never_become_local_users(env: BridgeEnv) -> None:
    assert env.bridge.get_user_by_mxid(BOB_GHOST) is None
    assert env.bridge.get_user_by_mxid(env.bridge.config.bot_mxid) is None
    assert env.bridge.get_user_by_mxid("not-an-mxid") is None
    assert env.bridge.get_user_by_mxid("@nobody:test", create=False) is None
    assert env.bridge.get_user_by_mxid(ALICE) is env.bridge.get_user_by_mxid(ALICE)


async def test_matrix_events_from_ghosts_are_dropped(env: BridgeEnv) -> None:
    await env.bridge.handle_matrix_event(matrix_event("!any:test", "$x", {"body": "hi"}, sender=BOB_GHOST))
    assert env.bridge.get_user_by_mxid(BOB_GHOST) is None
    assert env.store.get_user(BOB_GHOST) is None
