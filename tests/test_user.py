import dataclasses

import pytest

from qqbridge.bridge.user import WILL_AUTO_ACCEPT
from qqbridge.core.elements import (
    GroupJoinEvent,
    GroupMuteEvent,
    MemberCardUpdatedEvent,
    MemberJoinEvent,
    MemberLeaveEvent,
    MemberPermissionChangedEvent,
    QQMessage,
    TextElement,
)
from qqbridge.core.errors import UserNotLoggedInError
from qqbridge.core.identity import UID, ChatType, PortalKey
from tests.fakes import (
    ALICE,
    BOB,
    BOB_GHOST,
    GROUP,
    ME,
    ME_GHOST,
    QQ_TIME,
    BridgeEnv,
    group_message,
    login_alice,
    private_message,
)

GROUP_KEY = PortalKey.of(UID.group(GROUP), UID.user(ME))
PRIVATE_KEY = PortalKey.of(UID.user(BOB), UID.user(ME))


async def _group_room(env: BridgeEnv):
    """Log in, bridge one group message and join @alice so the room is not cleaned up as empty."""
    user, client = await login_alice(env)
    await user.receive(group_message(1, TextElement(content="hello")))
    await env.settle()
    portal = env.bridge.get_portal_by_key(GROUP_KEY)
    await env.intent(ALICE).ensure_joined(portal.mxid)
    return user, client, portal, env.hs.rooms[portal.mxid]


async def test_private_messages_from_both_sides_share_one_portal(env: BridgeEnv) -> None:
    user, _ = await login_alice(env)
    env.bridge.get_puppet_by_uid(UID.user(ME)).set_custom_mxid(ALICE)

    await user.receive(private_message(1, TextElement(content="from bob")))
    await user.receive(private_message(2, TextElement(content="from me"), sender=ME, target=BOB))
    await user.receive(
        QQMessage(
            chat_type=ChatType.TEMP,
            seq=3,
            time=QQ_TIME,
            sender=BOB,
            target=ME,
            elements=(TextElement(content="temp session"),),
        )
    )
    await env.settle()

    portal = env.bridge.get_portal_by_key(PRIVATE_KEY)
    events = env.hs.rooms[portal.mxid].messages()
    assert [(e["sender"], e["content"]["body"]) for e in events] == [
        (BOB_GHOST, "from bob"),
        (ALICE, "from me"),
        (BOB_GHOST, "temp session"),
    ]
    assert len(env.hs.rooms) == 1


async def test_member_mute_posts_notice_once(env: BridgeEnv) -> None:
    user, _, portal, room = await _group_room(env)
    mute = GroupMuteEvent(group_code=GROUP, operator_uin=BOB, target_uin=ME, duration=60, time=QQ_TIME)

    await user.receive(mute)
    await user.receive(mute)
    await user.receive(dataclasses.replace(mute, duration=0, time=QQ_TIME + 60))
    await env.settle()

    notices = room.messages()[1:]
    assert [(e["sender"], e["content"]["msgtype"], e["content"]["body"]) for e in notices] == [
        (BOB_GHOST, "m.notice", f"{ME} was muted for 60 seconds"),
        (BOB_GHOST, "m.notice", f"{ME} was unmuted"),
    ]


async def test_mute_all_restricts_sending(env: BridgeEnv) -> None:
    user, _, _, room = await _group_room(env)

    await user.receive(GroupMuteEvent(group_code=GROUP, operator_uin=BOB, target_uin="0", duration=600))
    await env.settle()
    assert room.state[("m.room.power_levels", "")]["events_default"] == 50

    await user.receive(GroupMuteEvent(group_code=GROUP, operator_uin=BOB, target_uin="0", duration=0))
    await env.settle()
    assert room.state[("m.room.power_levels", "")]["events_default"] == 0


async def test_group_updates_without_room_are_ignored(env: BridgeEnv) -> None:
    user, _ = await login_alice(env)
    await user.receive(MemberJoinEvent(group_code=GROUP, member_uin="50005"))
    await user.receive(GroupMuteEvent(group_code=GROUP, operator_uin=BOB, target_uin=ME, duration=60))
    await env.settle()
    assert env.hs.rooms == {}


async def test_member_join_and_leave(env: BridgeEnv) -> None:
    user, client, portal, room = await _group_room(env)
    client.add_user("50005", "Eve", is_friend=False)

    await user.receive(MemberJoinEvent(group_code=GROUP, member_uin="50005"))
    await env.settle()
    eve = "@qq_50005:test"
    assert eve in room.members
    assert room.state[("m.room.member", eve)]["displayname"] == "Eve (QQ)"

    await user.receive(MemberLeaveEvent(group_code=GROUP, member_uin="50005"))
    await user.receive(MemberLeaveEvent(group_code=GROUP, member_uin=BOB, operator_uin=ME))
    await env.settle()
    assert eve not in room.members
    assert BOB_GHOST not in room.members
    assert (portal.mxid, ME_GHOST, BOB_GHOST) in env.hs.kicks
    assert env.bridge.get_portal_by_mxid(portal.mxid) is portal


async def test_card_and_permission_changes(env: BridgeEnv) -> None:
    user, _, _, room = await _group_room(env)

    await user.receive(MemberCardUpdatedEvent(group_code=GROUP, member_uin=BOB, card_name="Captain"))
    await user.receive(MemberPermissionChangedEvent(group_code=GROUP, member_uin=BOB, is_admin=True))
    await env.settle()

    assert room.state[("m.room.member", BOB_GHOST)]["displayname"] == "Captain (QQ)"
    levels = room.state[("m.room.power_levels", "")]
    assert levels["users"][BOB_GHOST] == 50
    assert levels["events"]["m.reaction"] == 0

    await user.receive(MemberPermissionChangedEvent(group_code=GROUP, member_uin=BOB, is_admin=False))
    await env.settle()
    assert BOB_GHOST not in room.state[("m.room.power_levels", "")]["users"]


async def test_group_join_creates_then_updates_room(env: BridgeEnv) -> None:
    user, client = await login_alice(env)

    await user.receive(GroupJoinEvent(group_code=GROUP, group_name="Group"))
    await env.settle()
    portal = env.bridge.get_portal_by_key(GROUP_KEY)
    room = env.hs.rooms[portal.mxid]
    assert room.name == "Group"
    assert room.topic == "About the group"
    assert {BOB_GHOST, ME_GHOST} <= room.members

    client.groups[GROUP] = dataclasses.replace(client.groups[GROUP], name="New name")
    await user.receive(GroupJoinEvent(group_code=GROUP, group_name="New name"))
    await env.settle()
    assert len(env.hs.rooms) == 1
    assert room.state[("m.room.name", "")] == {"name": "New name"}


async def test_ensure_invited_handles_existing_membership(env: BridgeEnv) -> None:
    user, _, _, room = await _group_room(env)
    assert await user.ensure_invited(env.bridge.bot, room.room_id, is_direct=False)


async def test_ensure_invited_auto_joins_with_double_puppet(env: BridgeEnv) -> None:
    user, _ = await login_alice(env)
    env.bridge.get_puppet_by_uid(UID.user(ME)).set_custom_mxid(ALICE)
    room_id = await env.bridge.bot.create_room(
        name="", topic="", is_direct=True, invitees=[], initial_state=[], creation_content={}
    )

    assert await user.ensure_invited(env.bridge.bot, room_id, is_direct=True)

    [(_, inviter, invitee, extra)] = env.hs.invites
    assert (inviter, invitee) == (env.bridge.bot.user_id, ALICE)
    assert extra == {"is_direct": True, WILL_AUTO_ACCEPT: True}
    assert ALICE in env.hs.rooms[room_id].members


async def test_start_pm_reuses_then_recreates_room(env: BridgeEnv) -> None:
    user, _ = await login_alice(env)

    portal, puppet, created = await user.start_pm(UID.user(BOB), reason="command")
    assert created and puppet.mxid == BOB_GHOST
    first_room = portal.mxid

    again, _, created = await user.start_pm(UID.user(BOB), reason="command")
    assert again is portal and not created and portal.mxid == first_room

    del env.hs.rooms[first_room]
    again, _, created = await user.start_pm(UID.user(BOB), reason="command")
    assert created
    assert again.mxid != first_room
    assert env.bridge.get_portal_by_mxid(first_room) is None
    assert env.bridge.get_portal_by_mxid(again.mxid) is portal


async def test_start_pm_requires_login(env: BridgeEnv) -> None:
    user = env.bridge.get_user_by_mxid(ALICE)
    with pytest.raises(UserNotLoggedInError):
        await user.start_pm(UID.user(BOB))


async def test_logout_forgets_uin(env: BridgeEnv) -> None:
    user, _ = await login_alice(env)
    assert env.bridge.get_user_by_uin(ME) is user

    await user.logout()

    assert user.client is None and not user.is_logged_in()
    assert env.bridge.get_user_by_uin(ME) is None
    stored = env.store.get_user(ALICE)
    assert stored is not None and stored.uin is None
