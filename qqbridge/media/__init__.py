"""Media helpers: mime sniffing, attachment crypto, HTTP fetching and voice transcoding."""

from qqbridge.media.crypto import decrypt_media, encrypt_media
from qqbridge.media.fetch import HttpFetcher
from qqbridge.media.mime import image_dimensions, sniff_mime
from qqbridge.media.transcode import FfmpegVoiceCodec

__all__ = [
    "FfmpegVoiceCodec",
    "HttpFetcher",
    "decrypt_media",
    "encrypt_media",
    "image_dimensions",
    "sniff_mime",
]
