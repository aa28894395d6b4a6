"""Port interfaces for the Matrix homeserver, the QQ client and the voice codec."""

from __future__ import annotations

from typing import Any, Protocol

from qqbridge.core.elements import ImageElement, MessageElement, VideoElement, VoiceElement
from qqbridge.core.models import ChatTarget, GroupInfo, GroupMember, SendReceipt, UserInfo


class MatrixIntent(Protocol):
    """Client-server API acting as one Matrix user (bot, ghost or double puppet).

    Implementations raise ``MatrixForbiddenError`` for M_FORBIDDEN and
    ``MediaTooLargeError`` for M_TOO_LARGE / HTTP 413 uploads.
    """

    user_id: str

    async def ensure_registered(self) -> None:
        """Register the user on the homeserver if needed."""

    async def ensure_joined(self, room_id: str) -> None:
        """Join the room unless already joined."""

    async def create_room(
        self,
        *,
        name: str,
        topic: str,
        is_direct: bool,
        invitees: list[str],
        initial_state: list[dict[str, Any]],
        creation_content: dict[str, Any],
    ) -> str:
        """Create a private room and return its ID."""

    async def send_message(
        self,
        room_id: str,
        content: dict[str, Any],
        *,
        event_type: str = "m.room.message",
        timestamp: int | None = None,
    ) -> str:
        """Send a message event, backdated when ``timestamp`` is given; return the event ID."""

    async def send_state_event(
        self, room_id: str, event_type: str, content: dict[str, Any], state_key: str = ""
    ) -> str:
        """Send a state event and return its event ID."""

    async def get_state_event(self, room_id: str, event_type: str, state_key: str = "") -> dict[str, Any] | None:
        """Read current state content, or None when unset."""

    async def redact(self, room_id: str, event_id: str, reason: str | None = None) -> str:
        """Redact an event."""

    async def invite_user(self, room_id: str, user_id: str, extra_content: dict[str, Any] | None = None) -> None:
        """Invite a user into the room."""

    async def kick_user(self, room_id: str, user_id: str, reason: str = "") -> None:
        """Kick a member out of the room."""

    async def leave_room(self, room_id: str) -> None:
        """Leave the room."""

    async def get_joined_members(self, room_id: str) -> list[str]:
        """Return MXIDs of joined members."""

    async def set_displayname(self, name: str) -> None:
        """Set the global display name."""

    async def set_avatar_url(self, url: str) -> None:
        """Set the global avatar."""

    async def upload_media(self, data: bytes, mime_type: str, filename: str | None = None) -> str:
        """Upload bytes to the media repository and return the mxc URI."""

    async def download_media(self, mxc: str) -> bytes:
        """Download bytes from the media repository."""

    async def set_typing(self, room_id: str, typing: bool) -> None:
        """Toggle typing notification."""


class MatrixAppService(Protocol):
    """Appservice registration giving access to intents for namespaced users."""

    bot_mxid: str

    def intent(self, user_id: str) -> MatrixIntent:
        """Return the intent for ``user_id`` (ghost, bot, or a double-puppet login)."""


class QQClient(Protocol):
    """Logged-in QQ session for one local account."""

    uin: str

    def is_online(self) -> bool:
        """Whether the session is connected."""

    async def send_private_message(self, target: str, elements: list[MessageElement]) -> SendReceipt:
        """Send to a friend; raises ``RemoteSendError`` on failure."""

    async def send_group_message(self, group_code: str, elements: list[MessageElement]) -> SendReceipt:
        """Send to a group; raises ``RemoteSendError`` on failure."""

    async def download_attachment(self, url: str) -> bytes:
        """Fetch media referenced by an inbound element."""

    async def upload_image(self, target: ChatTarget, data: bytes) -> ImageElement:
        """Upload an image for the given chat and return the element to send."""

    async def upload_voice(self, target: ChatTarget, data: bytes) -> VoiceElement:
        """Upload silk voice data."""

    async def upload_video(self, target: ChatTarget, data: bytes, thumbnail: bytes) -> VideoElement:
        """Upload a short video with its thumbnail."""

    async def upload_file(self, target: ChatTarget, name: str, data: bytes) -> None:
        """Upload a file; QQ posts the file message itself."""

    async def recall_private_message(self, target: str, timestamp: int, seq: int, internal_id: int) -> None:
        """Recall a previously sent private message."""

    async def recall_group_message(self, group_code: str, seq: int, internal_id: int) -> None:
        """Recall a previously sent group message."""

    async def fetch_user_info(self, uin: str) -> UserInfo | None:
        """Friend entry when available, otherwise the public summary."""

    async def fetch_group_info(self, code: str) -> GroupInfo | None:
        """Group name and memo, without members."""

    async def fetch_group_members(self, code: str) -> list[GroupMember]:
        """Full member list for one group."""

    async def fetch_member_info(self, code: str, uin: str) -> GroupMember | None:
        """One member of one group."""

    async def list_friends(self) -> list[UserInfo]:
        """Reload and return the friend list."""

    async def list_groups(self) -> list[GroupInfo]:
        """Reload and return joined groups."""


class VoiceCodec(Protocol):
    """External codec service between Matrix ogg/opus and QQ silk voice."""

    async def silk_to_ogg(self, data: bytes) -> bytes:
        """Convert silk voice to ogg/opus; raises ``TranscodeError``."""

    async def ogg_to_silk(self, data: bytes) -> bytes:
        """Convert ogg/opus (or any ffmpeg input) to silk; raises ``TranscodeError``."""


class TelemetryPort(Protocol):
    """Counter telemetry sink."""

    def incr(self, name: str, value: int = 1, labels: tuple[tuple[str, str], ...] = ()) -> None:
        """Increase named counter with optional labels."""
