"""Exception taxonomy shared by the converter, portal and storage layers."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base error carrying a stable code and a retry hint."""

    code = "bridge_error"

    def __init__(self, message: str, *, code: str | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.retryable = retryable


class MalformedIDError(BridgeError, ValueError):
    code = "malformed_id"


class UnsupportedMessageTypeError(BridgeError):
    code = "unsupported_message_type"

    def __init__(self, msgtype: str) -> None:
        super().__init__(f"{msgtype or 'unknown'} messages are not supported")
        self.msgtype = msgtype


class GeoURIError(BridgeError, ValueError):
    code = "invalid_geo_uri"


class MediaError(BridgeError):
    code = "media_failed"


class MediaDownloadError(MediaError):
    code = "media_download_failed"


class MediaDecryptError(MediaError):
    code = "media_decrypt_failed"


class MediaUploadError(MediaError):
    code = "media_upload_failed"


class MediaTooLargeError(MediaUploadError):
    code = "media_too_large"


class TranscodeError(MediaError):
    code = "transcode_failed"


class RemoteSendError(BridgeError):
    """QQ rejected or failed to acknowledge an outbound message."""

    code = "remote_send_failed"

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class MatrixForbiddenError(BridgeError):
    """Homeserver answered M_FORBIDDEN for the acting intent."""

    code = "matrix_forbidden"


class UserNotLoggedInError(BridgeError):
    code = "not_logged_in"

    def __init__(self, message: str = "you are not logged in to QQ") -> None:
        super().__init__(message)


class DifferentUserError(BridgeError):
    code = "different_user"

    def __init__(self, message: str = "user is not the recipient of this private chat portal") -> None:
        super().__init__(message)
