"""CPU load, clock, temperature and power readings from procfs and sysfs."""

from __future__ import annotations

import abc
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import IO, Callable, Optional

from .file_utils import LsFlags, file_exists, ls, read_line

log = logging.getLogger(__name__)

_U64 = (1 << 64) - 1

_NUM = r"(\d{1,16})"
_FIELDS = r"\s+".join([_NUM] * 10)
_TOTAL_RE = re.compile(r"cpu\s+" + _FIELDS)
_CORE_RE = re.compile(r"cpu(\d{1,4})\s+" + _FIELDS)
_CORE_ID_RE = re.compile(r"cpu(\d{1,4})")
_INT_RE = re.compile(r"\s*([+-]?\d+)")


def _tdiv(a: int, b: int) -> int:
    """Integer division truncating toward zero."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _wrap_sub(a: int, b: int) -> int:
    return a - b if a > b else 0


def _scan_int(fh: Optional[IO[str]]) -> Optional[int]:
    """Re-read an open file from the start and parse its leading integer."""
    if fh is None:
        return None
    try:
        fh.seek(0)
        text = fh.read()
    except (OSError, ValueError):
        return None
    match = _INT_RE.match(text)
    return int(match.group(1)) if match else None


def _open_optional(path: Optional[str]) -> Optional[IO[str]]:
    if not path:
        return None
    try:
        return open(path, encoding="ascii", errors="replace")
    except OSError:
        return None


@dataclass
class CPUData:
    """Accumulated times and the periods since the last sample for one CPU."""

    cpu_id: int = 0
    total_time: int = 0
    user_time: int = 0
    system_time: int = 0
    system_all_time: int = 0
    idle_all_time: int = 0
    idle_time: int = 0
    nice_time: int = 0
    io_wait_time: int = 0
    irq_time: int = 0
    soft_irq_time: int = 0
    steal_time: int = 0
    guest_time: int = 0

    total_period: int = 0
    user_period: int = 0
    system_period: int = 0
    system_all_period: int = 0
    idle_all_period: int = 0
    idle_period: int = 0
    nice_period: int = 0
    io_wait_period: int = 0
    irq_period: int = 0
    soft_irq_period: int = 0
    steal_period: int = 0
    guest_period: int = 0

    percent: float = 0.0
    mhz: int = 0
    temp: int = 0
    cpu_mhz: int = 0
    power: float = 0.0


def calculate_cpu_data(
    cpu: CPUData,
    user: int,
    nice: int,
    system: int,
    idle: int,
    iowait: int,
    irq: int,
    softirq: int,
    steal: int,
    guest: int,
    guestnice: int,
) -> None:
    """Update `cpu` with a new sample of /proc/stat counters."""
    # Guest time is already accounted for in user and nice time.
    user = (user - guest) & _U64
    nice = (nice - guestnice) & _U64
    idle_all = (idle + iowait) & _U64
    system_all = (system + irq + softirq) & _U64
    virt_all = (guest + guestnice) & _U64
    total = (user + nice + system_all + idle_all + steal + virt_all) & _U64

    cpu.user_period = _wrap_sub(user, cpu.user_time)
    cpu.nice_period = _wrap_sub(nice, cpu.nice_time)
    cpu.system_period = _wrap_sub(system, cpu.system_time)
    cpu.system_all_period = _wrap_sub(system_all, cpu.system_all_time)
    cpu.idle_all_period = _wrap_sub(idle_all, cpu.idle_all_time)
    cpu.idle_period = _wrap_sub(idle, cpu.idle_time)
    cpu.io_wait_period = _wrap_sub(iowait, cpu.io_wait_time)
    cpu.irq_period = _wrap_sub(irq, cpu.irq_time)
    cpu.soft_irq_period = _wrap_sub(softirq, cpu.soft_irq_time)
    cpu.steal_period = _wrap_sub(steal, cpu.steal_time)
    cpu.guest_period = _wrap_sub(virt_all, cpu.guest_time)
    cpu.total_period = _wrap_sub(total, cpu.total_time)

    cpu.user_time = user
    cpu.nice_time = nice
    cpu.system_time = system
    cpu.system_all_time = system_all
    cpu.idle_all_time = idle_all
    cpu.idle_time = idle
    cpu.io_wait_time = iowait
    cpu.irq_time = irq
    cpu.soft_irq_time = softirq
    cpu.steal_time = steal
    cpu.guest_time = virt_all
    cpu.total_time = total

    if cpu.total_period == 0:
        return
    period = float(cpu.total_period)
    busy = (
        cpu.nice_period * 100.0 / period
        + cpu.user_period * 100.0 / period
        + cpu.system_all_period * 100.0 / period
        + (cpu.steal_period + cpu.guest_period) * 100.0 / period
    )
    cpu.percent = min(max(busy, 0.0), 100.0)


def find_input(path: str, prefix: str, name: str) -> Optional[str]:
    """Find the `<prefix>N_input` file whose `_label` file reads `name`."""
    for fname in ls(path, prefix, LsFlags.FILES):
        if not fname.endswith("_label"):
            continue
        if read_line(os.path.join(path, fname)) != name:
            continue
        uscore = fname.find("_")
        if uscore != -1:
            return os.path.join(path, fname[:uscore] + "_input")
    return None


def find_fallback_input(path: str, prefix: str) -> Optional[str]:
    """First `<prefix>*_input` file in sorted order, if any."""
    for fname in sorted(ls(path, prefix, LsFlags.FILES)):
        if fname.endswith("_input"):
            found = os.path.join(path, fname)
            log.debug("fallback cpu %s input: %s", prefix, found)
            return found
    return None


class PowerSource(abc.ABC):
    """A way of reading the CPU package power in watts."""

    @abc.abstractmethod
    def read(self) -> Optional[float]:
        """Current power, or None if it cannot be read."""

    def close(self) -> None:
        """Release any files held open."""


class _FilePowerSource(PowerSource):
    def __init__(self, *paths: Optional[str]) -> None:
        self._files = [_open_optional(p) for p in paths]

    def _values(self) -> Optional[list[int]]:
        if any(fh is None for fh in self._files):
            return None
        values = []
        for fh in self._files:
            value = _scan_int(fh)
            if value is None:
                return None
            values.append(value)
        return values

    def close(self) -> None:
        for fh in self._files:
            if fh is not None:
                fh.close()
        self._files = [None] * len(self._files)


class K10TempPower(_FilePowerSource):
    """Power from the k10temp driver's core and SoC voltage and current."""

    def __init__(
        self,
        core_voltage: Optional[str],
        core_current: Optional[str],
        soc_voltage: Optional[str],
        soc_current: Optional[str],
    ) -> None:
        super().__init__(core_voltage, core_current, soc_voltage, soc_current)

    def read(self) -> Optional[float]:
        values = self._values()
        if values is None:
            return None
        cv, cc, sv, sc = values
        return float(_tdiv(cv * cc + sv * sc, 1_000_000))


class ZenPower(_FilePowerSource):
    """Power from the zenpower driver's core and SoC power inputs."""

    def __init__(self, core_power: Optional[str], soc_power: Optional[str]) -> None:
        super().__init__(core_power, soc_power)

    def read(self) -> Optional[float]:
        values = self._values()
        if values is None:
            return None
        core, soc = values
        return float(_tdiv(core + soc, 1_000_000))


class RaplPower(PowerSource):
    """Power derived from the RAPL energy counter (microjoules) over time."""

    def __init__(
        self, energy_counter: str, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._file = _open_optional(energy_counter)
        self._clock = clock
        self.last_value = 0
        self.last_time = clock()

    def read(self) -> Optional[float]:
        value = _scan_int(self._file)
        if value is None or value < 0:
            return None
        now = self._clock()
        diff_micro = int((now - self.last_time) * 1_000_000)
        power = 0.0
        if self.last_value > 0 and value > self.last_value and diff_micro > 0:
            power = float((value - self.last_value) // diff_micro)
        self.last_value = value
        self.last_time = now
        return power

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


class AmdgpuPower(PowerSource):
    """CPU power as reported by the APU's GPU metrics."""

    def __init__(self, source: Callable[[], float]) -> None:
        self._source = source

    def read(self) -> Optional[float]:
        return float(self._source())


class CPUStats:
    """Collects per-CPU and total CPU statistics.

    Update methods return True when the reading succeeded.
    """

    def __init__(
        self,
        proc_dir: str = "/proc",
        sys_dir: str = "/sys",
        apu_power_source: Optional[Callable[[], float]] = None,
        apu_temp_source: Optional[Callable[[], int]] = None,
    ) -> None:
        self.proc_dir = proc_dir
        self.sys_dir = sys_dir
        self._apu_power_source = apu_power_source or (lambda: 0.0)
        self._apu_temp_source = apu_temp_source or (lambda: 0)
        self.cpu_type = "CPU"
        self.boottime = 0
        self.cpus: list[CPUData] = []
        self.total = CPUData()
        self.cpu_period = 0.0
        self.updated = False
        self.power_source: Optional[PowerSource] = None
        self._inited = False
        self._temp_file: Optional[IO[str]] = None

    @property
    def _stat_path(self) -> str:
        return os.path.join(self.proc_dir, "stat")

    def _read_stat(self) -> Optional[list[str]]:
        try:
            with open(self._stat_path, encoding="ascii", errors="replace") as fh:
                return fh.read().splitlines()
        except OSError:
            log.error("Failed to open %s", self._stat_path)
            return None

    def init(self) -> bool:
        """Discover the CPUs listed in /proc/stat and take a first sample."""
        if self._inited:
            return True
        self.cpus = []
        lines = self._read_stat()
        if lines is None:
            return False

        first = True
        for line in lines:
            if line.startswith("cpu"):
                if first:
                    first = False
                    continue
                match = _CORE_ID_RE.match(line)
                cpu = CPUData(
                    cpu_id=int(match.group(1)) if match else 0,
                    total_time=1,
                    total_period=1,
                )
                self.cpus.append(cpu)
            elif line.startswith("btime "):
                parts = line.split()
                if len(parts) > 1 and parts[1].isdigit():
                    self.boottime = int(parts[1])
                break
        else:
            log.debug("Failed to read all of %s", self._stat_path)
            return False

        self._inited = True
        return self.update_cpu_data()

    def reinit(self) -> bool:
        """Rediscover the CPUs from scratch."""
        self._inited = False
        return self.init()

    def update_cpu_data(self) -> bool:
        """Take a new sample of the total and per-CPU counters."""
        if not self._inited:
            return False
        lines = self._read_stat()
        if lines is None:
            return False

        ret = False
        cpu_count = 0
        for line in lines:
            total_match = None if ret else _TOTAL_RE.match(line)
            if total_match:
                ret = True
                calculate_cpu_data(self.total, *map(int, total_match.groups()))
                continue
            core_match = _CORE_RE.match(line)
            if not core_match:
                break
            if not ret:
                log.debug("Failed to parse 'cpu' line:%s", line)
                return False
            cpuid, *values = map(int, core_match.groups())
            if cpu_count + 1 > len(self.cpus) or self.cpus[cpu_count].cpu_id != cpuid:
                log.debug("Cpu id '%d' is out of bounds or wrong index, reiniting", cpuid)
                return self.reinit()
            calculate_cpu_data(self.cpus[cpu_count], *values)
            cpu_count += 1

        del self.cpus[cpu_count:]
        self.cpu_period = (
            self.cpus[0].total_period / len(self.cpus) if self.cpus else 0.0
        )
        self.updated = True
        return ret

    def update_core_mhz(self) -> bool:
        """Read the current frequency of every CPU."""
        for cpu in self.cpus:
            path = os.path.join(
                self.sys_dir,
                "devices/system/cpu",
                f"cpu{cpu.cpu_id}",
                "cpufreq/scaling_cur_freq",
            )
            try:
                with open(path, encoding="ascii", errors="replace") as fh:
                    khz = _scan_int(fh)
            except OSError:
                continue
            cpu.mhz = _tdiv(khz or 0, 1000)

        self.total.cpu_mhz = max((c.mhz for c in self.cpus if c.mhz > 0), default=0)
        return True

    def read_cpu_temp_file(self) -> Optional[int]:
        """Temperature in degrees Celsius from the sensor file, if open and readable."""
        value = _scan_int(self._temp_file)
        return None if value is None else _tdiv(value, 1000)

    def update_cpu_temp(self) -> bool:
        """Refresh the total CPU temperature."""
        if self.cpu_type == "APU":
            self.total.temp = int(self._apu_temp_source())
            return True
        temp = self.read_cpu_temp_file()
        self.total.temp = temp if temp is not None else 0
        return temp is not None

    def update_cpu_power(self) -> bool:
        """Refresh the total CPU power from the chosen power source."""
        if self.power_source is None:
            return False
        power = self.power_source.read()
        if power is None:
            return False
        self.total.power = power
        return True

    def _hwmon_dir(self) -> str:
        return os.path.join(self.sys_dir, "class/hwmon")

    def get_cpu_file(self) -> bool:
        """Locate and open the CPU temperature sensor."""
        if self._temp_file is not None:
            return True

        hwmon = self._hwmon_dir()
        path = ""
        found: Optional[str] = None
        for entry in ls(hwmon):
            path = os.path.join(hwmon, entry)
            name = read_line(os.path.join(path, "name"))
            log.debug("hwmon: sensor name: %s", name)
            if name == "coretemp":
                found = find_input(path, "temp", "Package id 0")
                break
            if name in ("zenpower", "k10temp"):
                found = find_input(path, "temp", "Tdie") or find_input(
                    path, "temp", "Tctl"
                )
                break
            if name == "atk0110":
                found = find_input(path, "temp", "CPU Temperature")
                break
            if name == "it8603":
                found = find_input(path, "temp", "temp1")
                break
            path = ""

        if path and not (found and file_exists(found)):
            found = find_fallback_input(path, "temp")
        if not path or not found:
            log.error("Could not find cpu temp sensor location")
            return False
        log.debug("hwmon: using input: %s", found)
        self._temp_file = _open_optional(found)
        return True

    def _init_k10temp(self, path: str) -> Optional[PowerSource]:
        inputs = [
            find_input(path, "in", "Vcore"),
            find_input(path, "curr", "Icore"),
            find_input(path, "in", "Vsoc"),
            find_input(path, "curr", "Isoc"),
        ]
        if not all(inputs):
            return None
        for item in inputs:
            log.debug("hwmon: using input: %s", item)
        return K10TempPower(*inputs)

    def _init_zenpower(self, path: str) -> Optional[PowerSource]:
        core = find_input(path, "power", "SVI2_P_Core")
        soc = find_input(path, "power", "SVI2_P_SoC")
        if not core or not soc:
            return None
        log.debug("hwmon: using input: %s", core)
        log.debug("hwmon: using input: %s", soc)
        return ZenPower(core, soc)

    def init_cpu_power_data(self) -> bool:
        """Choose how CPU power will be read."""
        if self.power_source is not None:
            return True

        source: Optional[PowerSource] = None
        intel = False
        hwmon = self._hwmon_dir()
        for entry in ls(hwmon):
            path = os.path.join(hwmon, entry)
            name = read_line(os.path.join(path, "name"))
            log.debug("hwmon: sensor name: %s", name)
            if name == "k10temp":
                source = self._init_k10temp(path)
                break
            if name == "zenpower":
                source = self._init_zenpower(path)
                break
            if name == "coretemp":
                intel = True

        if source is None and intel:
            powercap = os.path.join(self.sys_dir, "class/powercap")
            for entry in ls(powercap):
                path = os.path.join(powercap, entry)
                name = read_line(os.path.join(path, "name"))
                log.debug("powercap: name: %s", name)
                if name == "package-0":
                    counter = os.path.join(path, "energy_uj")
                    if file_exists(counter):
                        source = RaplPower(counter)
                    break

        if source is None and not intel:
            source = AmdgpuPower(self._apu_power_source)

        if source is None:
            log.error("Failed to initialize CPU power data")
            return False
        self.power_source = source
        return True

    def close(self) -> None:
        """Close the sensor files held open."""
        if self._temp_file is not None:
            self._temp_file.close()
            self._temp_file = None
        if self.power_source is not None:
            self.power_source.close()
            self.power_source = None

    def __enter__(self) -> "CPUStats":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()