"""Voice transcoding between Matrix ogg/opus and QQ silk through external commands."""

from __future__ import annotations

import asyncio
import tempfile
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from qqbridge.core.errors import TranscodeError
from qqbridge.utils.helpers import get_cache_path

SAMPLE_RATE = 24000


class FfmpegVoiceCodec:
    """Runs ffmpeg for PCM conversion and a silk encoder/decoder pair for the QQ side.

    Both silk tools follow the silk-v3 command line: ``<tool> <input> <output> -Fs_API <rate>``.
    """

    def __init__(
        self,
        *,
        ffmpeg_path: str = "ffmpeg",
        silk_encoder: str = "silk-encoder",
        silk_decoder: str = "silk-decoder",
        timeout_seconds: float = 60.0,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.silk_encoder = silk_encoder
        self.silk_decoder = silk_decoder
        self.timeout_seconds = timeout_seconds

    async def silk_to_ogg(self, data: bytes) -> bytes:
        with tempfile.TemporaryDirectory(prefix="qqbridge-voice-", dir=get_cache_path()) as tmp:
            silk_path = Path(tmp) / "in.silk"
            pcm_path = Path(tmp) / "out.pcm"
            ogg_path = Path(tmp) / "out.ogg"
            silk_path.write_bytes(data)
            await self._run([self.silk_decoder, str(silk_path), str(pcm_path), "-Fs_API", str(SAMPLE_RATE)])
            await self._run(
                [
                    self.ffmpeg_path, "-y",
                    "-f", "s16le",
                    "-ar", str(SAMPLE_RATE),
                    "-ac", "1",
                    "-i", str(pcm_path),
                    "-c:a", "libopus",
                    "-b:a", "24K",
                    "-f", "ogg",
                    str(ogg_path),
                ]
            )
            return ogg_path.read_bytes()

    async def ogg_to_silk(self, data: bytes) -> bytes:
        with tempfile.TemporaryDirectory(prefix="qqbridge-voice-", dir=get_cache_path()) as tmp:
            src_path = Path(tmp) / "in.audio"
            pcm_path = Path(tmp) / "out.pcm"
            silk_path = Path(tmp) / "out.silk"
            src_path.write_bytes(data)
            await self._run(
                [
                    self.ffmpeg_path, "-y",
                    "-i", str(src_path),
                    "-f", "s16le",
                    "-ar", str(SAMPLE_RATE),
                    "-ac", "1",
                    str(pcm_path),
                ]
            )
            await self._run(
                [self.silk_encoder, str(pcm_path), str(silk_path), "-Fs_API", str(SAMPLE_RATE), "-tencent"]
            )
            return silk_path.read_bytes()

    async def _run(self, argv: Sequence[str]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TranscodeError(f"{argv[0]} not found") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TranscodeError(f"{argv[0]} timed out after {self.timeout_seconds}s") from e

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            logger.error("{} failed ({}): {}", argv[0], proc.returncode, detail)
            raise TranscodeError(f"{argv[0]} exited with status {proc.returncode}")
