from pathlib import Path

import httpx
import pytest

from qqbridge.core.errors import MediaDecryptError, MediaDownloadError, MediaTooLargeError, TranscodeError
from qqbridge.core.identity import UID
from qqbridge.media import avatar as avatar_module
from qqbridge.media.avatar import download_avatar, group_avatar_url, md5_hex, user_avatar_url
from qqbridge.media.crypto import decrypt_media, encrypt_media, encrypted_file_content
from qqbridge.media.fetch import HttpFetcher
from qqbridge.media.mime import extension_for, image_dimensions, placeholder_jpeg, sniff_mime
from qqbridge.media.transcode import FfmpegVoiceCodec
from tests.fakes import PNG_1X1, avatar_fetcher, png_bytes


def _fetcher(handler, max_bytes: int = 10) -> HttpFetcher:
    return HttpFetcher(max_bytes=max_bytes, transport=httpx.MockTransport(handler))


async def test_fetch_returns_body() -> None:
    fetcher = _fetcher(lambda request: httpx.Response(200, content=b"hello"))
    assert await fetcher.fetch("https://qq/file") == b"hello"


async def test_fetch_rejects_declared_oversize() -> None:
    fetcher = _fetcher(lambda request: httpx.Response(200, content=b"x" * 20))
    with pytest.raises(MediaTooLargeError):
        await fetcher.fetch("https://qq/big")


async def test_fetch_stops_streaming_past_the_limit() -> None:
    async def body():
        for _ in range(4):
            yield b"x" * 6

    fetcher = _fetcher(lambda request: httpx.Response(200, content=body()))
    with pytest.raises(MediaTooLargeError):
        await fetcher.fetch("https://qq/stream")


async def test_fetch_errors_become_download_errors() -> None:
    fetcher = _fetcher(lambda request: httpx.Response(404))
    with pytest.raises(MediaDownloadError):
        await fetcher.fetch("https://qq/missing")
    with pytest.raises(MediaDownloadError):
        await fetcher.fetch("ftp://qq/file")


@pytest.mark.parametrize(
    ("data", "filename", "expected"),
    [
        (PNG_1X1, None, "image/png"),
        (b"\xff\xd8\xff\xe0rest", None, "image/jpeg"),
        (b"GIF89a....", None, "image/gif"),
        (b"#!SILK_V3....", None, "audio/silk"),
        (b"\x02#!SILK_V3....", None, "audio/silk"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", None, "image/webp"),
        (b"\x00\x00\x00\x18ftypmp42", None, "video/mp4"),
        (b"plain words", "notes.txt", "text/plain"),
        (b"plain words", None, "application/octet-stream"),
        (b"", "photo.png", "application/octet-stream"),
    ],
)
def test_sniff_mime(data: bytes, filename: str | None, expected: str) -> None:
    assert sniff_mime(data, filename) == expected


def test_image_helpers() -> None:
    assert image_dimensions(png_bytes(3, 2)) == (3, 2)
    assert image_dimensions(b"not an image") == (0, 0)
    thumb = placeholder_jpeg()
    assert sniff_mime(thumb) == "image/jpeg"
    assert image_dimensions(thumb) == (1, 1)
    assert extension_for("audio/silk") == ".silk"
    assert extension_for("audio/ogg") == ".ogg"


def test_encrypted_attachment_round_trip_and_tamper() -> None:
    ciphertext, info = encrypt_media(b"holiday photo")
    assert ciphertext != b"holiday photo"
    content = encrypted_file_content("mxc://test/enc", info)
    assert content["url"] == "mxc://test/enc"
    assert decrypt_media(ciphertext, content) == b"holiday photo"

    tampered = bytes([ciphertext[0] ^ 0xFF]) + ciphertext[1:]
    with pytest.raises(MediaDecryptError):
        decrypt_media(tampered, content)
    with pytest.raises(MediaDecryptError):
        decrypt_media(ciphertext, {"url": "mxc://test/enc"})


async def test_avatar_skips_placeholder_sizes(monkeypatch: pytest.MonkeyPatch) -> None:
    placeholder = png_bytes(color=(200, 200, 200))
    real = png_bytes(color=(0, 0, 255))
    fetcher = avatar_fetcher({user_avatar_url("20002", 0): placeholder, user_avatar_url("20002", 640): real})

    assert await download_avatar(fetcher, UID.user("20002")) == placeholder
    monkeypatch.setattr(avatar_module, "EMPTY_AVATAR_MD5", md5_hex(placeholder))
    assert await download_avatar(fetcher, UID.user("20002")) == real
    assert await download_avatar(fetcher, UID.user("30003")) is None


async def test_group_avatar_uses_group_endpoint() -> None:
    fetcher = avatar_fetcher({group_avatar_url("30003"): PNG_1X1})
    assert await download_avatar(fetcher, UID.group("30003")) == PNG_1X1
    assert await download_avatar(fetcher, UID.group("40004")) is None


async def test_transcode_reports_missing_and_failing_tools(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QQBRIDGE_HOME", str(tmp_path))

    missing = FfmpegVoiceCodec(silk_decoder=str(tmp_path / "no-such-decoder"))
    with pytest.raises(TranscodeError, match="not found"):
        await missing.silk_to_ogg(b"#!SILK_V3")

    failing = FfmpegVoiceCodec(silk_decoder="false")
    with pytest.raises(TranscodeError, match="exited with status 1"):
        await failing.silk_to_ogg(b"#!SILK_V3")

    assert list((tmp_path / "cache").iterdir()) == []
