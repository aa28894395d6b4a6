"""QQ avatar endpoints."""

from __future__ import annotations

import hashlib

from loguru import logger

from qqbridge.core.errors import MediaError
from qqbridge.core.identity import UID
from qqbridge.media.fetch import HttpFetcher

# qlogo serves this placeholder for sizes a user never uploaded.
EMPTY_AVATAR_MD5 = "acef72340ac0e914090bd35799f5594e"
USER_AVATAR_SIZES = (0, 640, 140, 100, 41, 40)


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def user_avatar_url(uin: str, size: int) -> str:
    return f"https://q.qlogo.cn/headimg_dl?dst_uin={uin}&spec={size}"


def group_avatar_url(code: str) -> str:
    return f"https://p.qlogo.cn/gh/{code}/{code}/0"


async def download_avatar(fetcher: HttpFetcher, uid: UID) -> bytes | None:
    """Fetch the current avatar for a user or group; None when none is available."""
    if uid.is_group:
        try:
            return await fetcher.fetch(group_avatar_url(uid.value))
        except MediaError as e:
            logger.warning("Failed to download avatar of group {}: {}", uid.value, e)
            return None

    for size in USER_AVATAR_SIZES:
        try:
            data = await fetcher.fetch(user_avatar_url(uid.value, size))
        except MediaError:
            continue
        if data and md5_hex(data) != EMPTY_AVATAR_MD5:
            return data
    logger.debug("No avatar found for {}", uid.value)
    return None
