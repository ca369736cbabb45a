"""Error taxonomy shared by the parser, the worker runtime and the client.

Every error carries a stable ``code`` so it can cross the worker boundary as
plain data and be rebuilt on the other side as the same class
(see ``beatparser.worker.protocol.error_from_payload``).
"""

from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any


class BeatParserError(Exception):
    """Base class for all beatparser errors."""

    code = "BEAT_PARSER_ERROR"
    category = "system"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InvalidInputReason(str, Enum):
    WRONG_TYPE = "wrong_type"
    EMPTY = "empty"
    TOO_SHORT = "too_short"
    NON_FINITE = "non_finite"
    UNSUPPORTED_BUFFER_TYPE = "unsupported_buffer_type"


class InvalidInputError(BeatParserError):
    code = "INVALID_INPUT"
    category = "input"

    def __init__(
        self,
        message: str,
        reason: InvalidInputReason | str = InvalidInputReason.WRONG_TYPE,
        **context: Any,
    ) -> None:
        self.reason = InvalidInputReason(reason)
        super().__init__(message, reason=self.reason.value, **context)
        self.minimum = context.get("minimum")
        self.actual = context.get("actual")
        self.index = context.get("index")


# ---------------------------------------------------------------------------
# Configuration / lifecycle
# ---------------------------------------------------------------------------


class ConfigError(BeatParserError):
    code = "CONFIG_ERROR"
    category = "input"


class ConfigLockedError(ConfigError):
    code = "CONFIG_LOCKED"


class ParserStateError(ConfigError):
    """The parser is in a state that does not accept the requested call."""

    code = "PARSER_STATE"
    category = "system"


# ---------------------------------------------------------------------------
# Plugins
# ---------------------------------------------------------------------------


class PluginError(BeatParserError):
    code = "PLUGIN_ERROR"
    category = "processing"


class DuplicatePluginError(PluginError):
    code = "PLUGIN_DUPLICATE"


class InvalidPluginError(PluginError):
    code = "PLUGIN_INVALID"


class LateRegistrationError(PluginError):
    code = "PLUGIN_LATE_REGISTRATION"


class PluginHookError(PluginError):
    """A plugin hook raised; wraps the cause with the plugin name."""

    code = "PLUGIN_HOOK_FAILED"

    def __init__(
        self,
        message: str,
        plugin_name: str = "",
        hook: str = "",
        cause: BaseException | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message, plugin_name=plugin_name, hook=hook, **context)
        self.plugin_name = plugin_name
        self.hook = hook
        self.cause = cause


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class DecodeError(BeatParserError):
    code = "DECODE_ERROR"
    category = "input"


class AudioNotFoundError(DecodeError):
    code = "DECODE_NOT_FOUND"


class UnsupportedFormatError(DecodeError):
    code = "DECODE_UNSUPPORTED_FORMAT"

    def __init__(self, message: str, extension: str = "", **context: Any) -> None:
        super().__init__(message, extension=extension, **context)
        self.extension = extension


class CorruptAudioError(DecodeError):
    code = "DECODE_CORRUPT"


# ---------------------------------------------------------------------------
# Worker offload
# ---------------------------------------------------------------------------


class WorkerProtocolError(BeatParserError):
    code = "WORKER_PROTOCOL"
    category = "system"


class WorkerUnavailableError(WorkerProtocolError):
    code = "WORKER_UNAVAILABLE"


class WorkerTransportError(WorkerProtocolError):
    """Transport-level failure; the client may resubmit these."""

    code = "WORKER_TRANSPORT"


class WorkerCrashedError(WorkerTransportError):
    code = "WORKER_CRASHED"


class MessageCorruptError(WorkerProtocolError):
    code = "MESSAGE_CORRUPT"


class OperationTimeoutError(BeatParserError, TimeoutError):
    code = "TIMEOUT"
    category = "system"


class OperationCancelledError(BeatParserError):
    code = "CANCELLED"
    category = "system"


ERROR_TYPES: dict[str, type[BeatParserError]] = {
    cls.code: cls
    for cls in (
        BeatParserError,
        InvalidInputError,
        ConfigError,
        ConfigLockedError,
        ParserStateError,
        PluginError,
        DuplicatePluginError,
        InvalidPluginError,
        LateRegistrationError,
        PluginHookError,
        DecodeError,
        AudioNotFoundError,
        UnsupportedFormatError,
        CorruptAudioError,
        WorkerProtocolError,
        WorkerUnavailableError,
        WorkerTransportError,
        WorkerCrashedError,
        MessageCorruptError,
        OperationTimeoutError,
        OperationCancelledError,
    )
}


# ---------------------------------------------------------------------------
# Message sanitizing
# ---------------------------------------------------------------------------

_OBJECT_INTERNALS = re.compile(
    r"__(proto|class|dict|globals|builtins|code|closure|subclasses|mro|module)__"
)
_ABSOLUTE_PATH = re.compile(r"(?:(?<![\w.])/[^\s/:'\"]+(?:/[^\s/:'\"]+)+)|(?:\b[A-Za-z]:\\[^\s'\"]+)")
_MIN_SECRET_LENGTH = 6
_SECRET_KEY = re.compile(r"KEY|TOKEN|SECRET|PASSWORD", re.IGNORECASE)


def _env_values() -> list[str]:
    """Values of credential-like environment variables."""
    return [
        value for key, value in os.environ.items()
        if _SECRET_KEY.search(key) and len(value) >= _MIN_SECRET_LENGTH
    ]


def is_sensitive(message: str) -> bool:
    """True when *message* carries process state that must not be surfaced."""
    if _OBJECT_INTERNALS.search(message) or _ABSOLUTE_PATH.search(message):
        return True
    return any(value in message for value in _env_values())


def sanitize_message(message: str, fallback: str) -> str:
    """Return *message*, or *fallback* if it leaks environment/path/internals."""
    if not message or is_sensitive(message):
        return fallback
    return message
