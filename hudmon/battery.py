"""Laptop battery charge, power draw and remaining time from sysfs."""

from __future__ import annotations

import logging
import math
import os
from typing import Optional

log = logging.getLogger(__name__)

_MAX_BATTERIES = 2
_HISTORY_LENGTH = 25
_DISCHARGE_FREE_STATES = ("Charging", "Unknown", "Full")


def _read_first_line(path: str) -> Optional[str]:
    """First line of a file without its newline; None if unreadable or empty."""
    try:
        with open(path, encoding="utf-8", errors="replace", newline="") as fh:
            line = fh.readline()
    except OSError:
        return None
    if line == "":
        return None
    return line.split("\n", 1)[0]


def _to_float(line: str) -> float:
    """Parse a sysfs number; raises ValueError if it is not one."""
    return float(line.strip())


def _fdiv(a: float, b: float) -> float:
    """Float division with IEEE results for a zero divisor."""
    if b:
        return a / b
    if a == 0 or math.isnan(a):
        return math.nan
    return math.copysign(math.inf, a)


class BatteryStats:
    """Aggregated readings of up to two batteries under a power_supply directory."""

    def __init__(self, root: str = "/sys/class/power_supply") -> None:
        self.root = root
        self.batt_paths: list[str] = []
        self.batt_count = 0
        self.batt_check = False
        self.current_watt = 0.0
        self.current_percent = 0.0
        self.remaining_time = 0.0
        self.current_status = ""
        self.state = [""] * _MAX_BATTERIES
        self.current_now_vec: list[float] = []

    def find_batteries(self) -> int:
        """Locate the battery directories (names containing "BAT")."""
        try:
            names = sorted(os.listdir(self.root))
        except OSError:
            names = []
        found = [os.path.join(self.root, n) for n in names if "BAT" in n]
        self.batt_paths = found[:_MAX_BATTERIES]
        self.batt_count = len(self.batt_paths)
        self.batt_check = True
        return self.batt_count

    def update(self) -> None:
        """Refresh power, charge percentage and remaining time."""
        if not self.batt_check:
            self.find_batteries()
            if self.batt_count == 0:
                log.error("No battery found")
        if self.batt_count > 0:
            self.current_watt = self.get_power()
            self.current_percent = self.get_percent()
            self.remaining_time = self.get_time_remaining()

    def get_percent(self) -> float:
        """Charge level in percent across all batteries."""
        charge_n = 0.0
        charge_f = 0.0
        for path in self.batt_paths:
            charge_now = os.path.join(path, "charge_now")
            energy_now = os.path.join(path, "energy_now")
            if os.path.exists(charge_now):
                now_file, full_file = charge_now, os.path.join(path, "charge_full")
            elif os.path.exists(energy_now):
                now_file, full_file = energy_now, os.path.join(path, "energy_full")
            else:
                # Only a percentage is available: average the batteries.
                line = _read_first_line(os.path.join(path, "capacity"))
                if line is not None:
                    charge_n += _to_float(line) / 100
                    charge_f = float(self.batt_count)
                continue
            line = _read_first_line(now_file)
            if line is not None:
                charge_n += _to_float(line) / 1000000
            line = _read_first_line(full_file)
            if line is not None:
                charge_f += _to_float(line) / 1000000
        return _fdiv(charge_n, charge_f) * 100

    def get_power(self) -> float:
        """Discharge power in watts; 0 while charging, full or unknown."""
        current = 0.0
        voltage = 0.0
        for i, path in enumerate(self.batt_paths):
            status = _read_first_line(os.path.join(path, "status"))
            if status is not None:
                self.current_status = status
                self.state[i] = status
            if self.state[i] in _DISCHARGE_FREE_STATES:
                return 0.0

            current_now = os.path.join(path, "current_now")
            if os.path.exists(current_now):
                line = _read_first_line(current_now)
                if line is not None:
                    current += _to_float(line) / 1000000
                line = _read_first_line(os.path.join(path, "voltage_now"))
                if line is not None:
                    voltage += _to_float(line) / 1000000
            else:
                line = _read_first_line(os.path.join(path, "power_now"))
                if line is not None:
                    current += _to_float(line) / 1000000
                    voltage = 1.0
        return current * voltage

    def get_time_remaining(self) -> float:
        """Hours of charge left at the recent average discharge current."""
        charge = 0.0
        for path in self.batt_paths:
            current_now = os.path.join(path, "current_now")
            power_now = os.path.join(path, "power_now")
            voltage_now = os.path.join(path, "voltage_now")
            charge_now = os.path.join(path, "charge_now")
            energy_now = os.path.join(path, "energy_now")

            if os.path.exists(current_now):
                line = _read_first_line(current_now)
                if line is not None:
                    self.current_now_vec.append(_to_float(line))
            elif os.path.exists(power_now):
                voltage = 0.0
                power = 0.0
                line = _read_first_line(voltage_now)
                if line is not None:
                    voltage = _to_float(line)
                line = _read_first_line(power_now)
                if line is not None:
                    power = _to_float(line)
                self.current_now_vec.append(_fdiv(power, voltage))

            if os.path.exists(charge_now):
                line = _read_first_line(charge_now)
                if line is not None:
                    charge += _to_float(line)
            elif os.path.exists(energy_now):
                energy = 0.0
                voltage = 0.0
                line = _read_first_line(energy_now)
                if line is not None:
                    energy = _to_float(line)
                line = _read_first_line(voltage_now)
                if line is not None:
                    voltage = _to_float(line)
                charge += _fdiv(energy, voltage)

            if len(self.current_now_vec) > _HISTORY_LENGTH:
                del self.current_now_vec[0]

        current = _fdiv(sum(self.current_now_vec), float(len(self.current_now_vec)))
        return _fdiv(charge, current)