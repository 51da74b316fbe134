"""Battery state of game controllers listed under the power_supply class."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, Optional

_XBOX_MARKERS = ("gip", "xpadneo")

# (marker in the device name, display name)
_KINDS = (
    ("sony_controller", "DS4 PAD"),
    ("ps-controller", "DS4/5 PAD"),
    ("nintendo_switch_controller", "SWITCH PAD"),
    ("hid-e4", "8BITDO PAD"),
)


@dataclass
class Gamepad:
    """One controller's name and battery state."""

    name: str = ""
    battery: str = ""
    report_percent: bool = False
    battery_percent: str = ""
    is_charging: bool = False


def _read_first_line(path: str) -> Optional[str]:
    try:
        with open(path, encoding="utf-8", errors="replace", newline="") as fh:
            line = fh.readline()
    except OSError:
        return None
    if line == "":
        return None
    return line.split("\n", 1)[0]


def find_gamepad_paths(root: str = "/sys/class/power_supply") -> list[str]:
    """Paths of the controller entries under `root`."""
    paths: list[str] = []
    try:
        names = sorted(os.listdir(root))
    except OSError:
        return paths
    for name in names:
        path = os.path.join(root, name)
        for marker in _XBOX_MARKERS:
            if marker in name:
                paths.append(path)
        for marker, _ in _KINDS:
            if marker in name:
                paths.append(path)
    return paths


def battery_level(percent: int) -> Optional[str]:
    """Coarse battery level for a percentage, None outside 0..100."""
    if 0 <= percent <= 25:
        return "Low"
    if 26 <= percent <= 49:
        return "Normal"
    if 50 <= percent <= 74:
        return "High"
    if 75 <= percent <= 100:
        return "Full"
    return None


def _is_xbox(name: str) -> bool:
    return any(marker in name for marker in _XBOX_MARKERS)


def read_gamepads(paths: Iterable[str]) -> list[Gamepad]:
    """Read every controller's state, sorted by name."""
    paths = list(paths)
    names = [os.path.basename(p) for p in paths]
    kinds = [("xbox", "XBOX PAD", _is_xbox)] + [
        (marker, label, (lambda n, m=marker: m in n)) for marker, label in _KINDS
    ]
    totals = {key: sum(1 for n in names if match(n)) for key, _, match in kinds}
    counters = {key: 0 for key, _, _ in kinds}

    pads: list[Gamepad] = []
    for path, base in zip(paths, names):
        pad = Gamepad()
        for key, label, match in kinds:
            if not match(base):
                continue
            if totals[key] == 1:
                pad.name = label
            else:
                pad.name = f"{label}-{counters[key] + 1}"
            counters[key] += 1

        status = _read_first_line(os.path.join(path, "status"))
        if status in ("Charging", "Full"):
            pad.is_charging = True

        capacity = os.path.join(path, "capacity")
        if os.path.exists(capacity):
            line = _read_first_line(capacity)
            if line is not None:
                pad.battery_percent = line
                pad.report_percent = True
                level = battery_level(int(line.strip()))
                if level is not None:
                    pad.battery = level
        else:
            line = _read_first_line(os.path.join(path, "capacity_level"))
            if line is not None:
                pad.battery = line
        pads.append(pad)

    pads.sort(key=lambda p: p.name)
    return pads