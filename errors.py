"""Error taxonomy for the live voice session.

ConfigError and DeviceError abort connect() before anything is acquired.
ChannelError tears the whole session down. DecodeError only costs one chunk.
"""

from enum import Enum


class DeviceErrorKind(str, Enum):
    NO_DEVICE = "no_device"
    PERMISSION_DENIED = "permission_denied"
    UNSUPPORTED = "unsupported"
    OTHER = "other"


DEVICE_MESSAGES = {
    DeviceErrorKind.NO_DEVICE:
        "No microphone found. Please connect a microphone and try again.",
    DeviceErrorKind.PERMISSION_DENIED:
        "Microphone access denied. Please allow microphone permission and try again.",
    DeviceErrorKind.UNSUPPORTED:
        "Audio input is not supported on this system.",
}


class VoiceSessionError(Exception):
    """Base class; `message` is safe to show to the user."""
    category = "session"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigError(VoiceSessionError):
    category = "config"


class DeviceError(VoiceSessionError):
    category = "device"

    def __init__(self, kind: DeviceErrorKind, detail: str = ""):
        if kind in DEVICE_MESSAGES:
            message = DEVICE_MESSAGES[kind]
        else:
            message = f"Audio error: {detail}" if detail else "Audio error."
        super().__init__(message)
        self.kind = kind
        self.detail = detail


class ChannelError(VoiceSessionError):
    category = "channel"

    def __init__(self, message: str = "Connection error occurred.", detail: str = ""):
        super().__init__(message)
        self.detail = detail


class DecodeError(VoiceSessionError):
    category = "decode"
