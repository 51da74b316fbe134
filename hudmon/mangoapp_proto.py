"""Wire format of the frame and control messages exchanged with the overlay
app, and the logic that acts on them."""

from __future__ import annotations

import enum
import struct
from collections import deque
from dataclasses import dataclass
from typing import Optional, Sequence

FRAME_MSG_TYPE = 1
CTRL_MSG_TYPE = 2
SUPPORTED_VERSION = 1
HISTORY_LENGTH = 200
NO_LATENCY = (1 << 64) - 1

USAGE = """\
Usage: mangohudctl [set|toggle] attribute [value]
       mangohudctl reload-cfg
Attributes:
   no_display      hides or shows hud
   log_session     handles logging status
   reload_config   reloads the config
Accepted values:
   true
   false
   1
   0
"""

# Packed, little-endian; "q" is the C long of the message queue type.
_FRAME_HEADER = struct.Struct("<qI")
_FRAME = struct.Struct("<qIIQBBQQ")
_CTRL = struct.Struct("<qIIBB64sB")

# Offsets within the frame message, as the reader checks for them.
_OFF_VISIBLE_FRAMETIME = 16
_OFF_FSR_UPSCALE = 24
_OFF_LATENCY = 34


class UsageError(Exception):
    """Raised when the control command line cannot be understood."""


class Action(enum.IntEnum):
    """What a control message asks for one setting."""

    KEEP = 0
    SET = 1
    CLEAR = 2
    TOGGLE = 3


def apply_action(current: bool, action: Action) -> bool:
    """The new value of a flag after `action`."""
    if action == Action.SET:
        return True
    if action == Action.CLEAR:
        return False
    if action == Action.TOGGLE:
        return not current
    return current


@dataclass
class FrameMessage:
    """A frame report; fields the sender did not include are None."""

    version: int
    pid: int
    visible_frametime_ns: Optional[int] = None
    fsr_upscale: Optional[int] = None
    fsr_sharpness: Optional[int] = None
    app_frametime_ns: Optional[int] = None
    latency_ns: Optional[int] = None


def decode_frame_message(data: bytes) -> FrameMessage:
    """Decode a frame message including its leading message type.

    Raises ValueError if the data is shorter than the header or has an
    unsupported version.
    """
    data = bytes(data)
    if len(data) < _FRAME_HEADER.size:
        raise ValueError("frame message shorter than its header")
    _, version = _FRAME_HEADER.unpack_from(data)
    if version != SUPPORTED_VERSION:
        raise ValueError(f"Unsupported mangoapp struct version: {version}")

    size = len(data)
    padded = data[: _FRAME.size].ljust(_FRAME.size, b"\0")
    (_, _, pid, visible, upscale, sharpness, app, latency) = _FRAME.unpack(padded)
    msg = FrameMessage(version=version, pid=pid)
    if size > _OFF_VISIBLE_FRAMETIME:
        msg.visible_frametime_ns = visible
        if size > _OFF_FSR_UPSCALE:
            msg.fsr_upscale = upscale
            msg.fsr_sharpness = sharpness
        if size > _OFF_LATENCY:
            msg.app_frametime_ns = app
            msg.latency_ns = latency
    return msg


def _to_action(value: int) -> Action:
    try:
        return Action(value)
    except ValueError:
        return Action.KEEP


@dataclass
class CtrlMessage:
    """A control message changing the display, logging or configuration."""

    no_display: Action = Action.KEEP
    log_session: Action = Action.KEEP
    log_session_name: str = ""
    reload_config: Action = Action.KEEP
    msg_type: int = CTRL_MSG_TYPE
    ctrl_msg_type: int = 1
    version: int = 1

    def pack(self) -> bytes:
        """Encode as the packed wire structure."""
        name = self.log_session_name.encode("utf-8")
        if len(name) > 64:
            raise ValueError("log session name longer than 64 bytes")
        return _CTRL.pack(
            self.msg_type,
            self.ctrl_msg_type,
            self.version,
            int(self.no_display),
            int(self.log_session),
            name,
            int(self.reload_config),
        )

    @classmethod
    def unpack(cls, data: bytes) -> "CtrlMessage":
        """Decode the packed wire structure; raises ValueError if too short."""
        if len(data) < _CTRL.size:
            raise ValueError("control message too short")
        (msg_type, ctrl_type, version, no_display, log_session, name,
         reload_config) = _CTRL.unpack_from(bytes(data))
        return cls(
            no_display=_to_action(no_display),
            log_session=_to_action(log_session),
            log_session_name=name.split(b"\0", 1)[0].decode("utf-8", "replace"),
            reload_config=_to_action(reload_config),
            msg_type=msg_type,
            ctrl_msg_type=ctrl_type,
            version=version,
        )


def str_to_bool(value: str) -> bool:
    """Accept true/false (any case) or 1/0; raise UsageError otherwise."""
    if value.lower() == "true" or value == "1":
        return True
    if value.lower() == "false" or value == "0":
        return False
    raise UsageError(
        f"The value '{value}' is not an accepted boolean. Use 0/1 or true/false"
    )


def build_ctrl_message(argv: Sequence[str]) -> CtrlMessage:
    """Build the control message for `set ATTR VALUE` or `toggle ATTR`."""
    args = list(argv)
    if len(args) < 2:
        raise UsageError(USAGE)
    verb, attribute = args[0], args[1]
    if verb == "set":
        if len(args) != 3:
            raise UsageError(USAGE)
        action = Action.SET if str_to_bool(args[2]) else Action.CLEAR
    elif verb == "toggle":
        if len(args) != 2:
            raise UsageError(USAGE)
        action = Action.TOGGLE
    else:
        raise UsageError(USAGE)

    msg = CtrlMessage()
    if attribute == "no_display":
        msg.no_display = action
    elif attribute == "log_session":
        msg.log_session = action
    elif attribute == "reload_config":
        msg.reload_config = action
    else:
        raise UsageError(USAGE)
    return msg


class FrametimeHistory:
    """Recent application frame times and latencies in milliseconds."""

    def __init__(self, length: int = HISTORY_LENGTH) -> None:
        self.app: deque[float] = deque([0.0] * length, maxlen=length)
        self.latency: deque[float] = deque([0.0] * length, maxlen=length)

    def add(self, app_frametime_ns: int, latency_ns: int) -> None:
        """Record one frame; an all-ones latency means none was measured."""
        self.app.append(app_frametime_ns / 1_000_000.0)
        if latency_ns == NO_LATENCY:
            self.latency.append(-1.0)
        else:
            self.latency.append(latency_ns / 1_000_000.0)