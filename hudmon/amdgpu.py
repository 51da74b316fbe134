"""Reading the amdgpu ``gpu_metrics`` table and averaging it over time."""

from __future__ import annotations

import dataclasses
import logging
import struct
import threading
import time
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Callable, Optional, Sequence

log = logging.getLogger(__name__)

METRICS_UPDATE_PERIOD_MS = 500
METRICS_POLLING_PERIOD_MS = 5
METRICS_SAMPLE_COUNT = METRICS_UPDATE_PERIOD_MS // METRICS_POLLING_PERIOD_MS
NUM_HBM_INSTANCES = 4

INVALID_METRIC = 0xFFFF

CpuTempReader = Callable[[], Optional[int]]

_HEADER_FIELDS = [
    ("structure_size", "H"),
    ("format_revision", "B"),
    ("content_revision", "B"),
]

_V1_3_FIELDS = _HEADER_FIELDS + [
    ("temperature_edge", "H"),
    ("temperature_hotspot", "H"),
    ("temperature_mem", "H"),
    ("temperature_vrgfx", "H"),
    ("temperature_vrsoc", "H"),
    ("temperature_vrmem", "H"),
    ("average_gfx_activity", "H"),
    ("average_umc_activity", "H"),
    ("average_mm_activity", "H"),
    ("average_socket_power", "H"),
    ("energy_accumulator", "Q"),
    ("system_clock_counter", "Q"),
    ("average_gfxclk_frequency", "H"),
    ("average_socclk_frequency", "H"),
    ("average_uclk_frequency", "H"),
    ("average_vclk0_frequency", "H"),
    ("average_dclk0_frequency", "H"),
    ("average_vclk1_frequency", "H"),
    ("average_dclk1_frequency", "H"),
    ("current_gfxclk", "H"),
    ("current_socclk", "H"),
    ("current_uclk", "H"),
    ("current_vclk0", "H"),
    ("current_dclk0", "H"),
    ("current_vclk1", "H"),
    ("current_dclk1", "H"),
    ("throttle_status", "I"),
    ("current_fan_speed", "H"),
    ("pcie_link_width", "H"),
    ("pcie_link_speed", "H"),
    ("padding", "H"),
    ("gfx_activity_acc", "I"),
    ("mem_activity_acc", "I"),
    ("temperature_hbm", f"{NUM_HBM_INSTANCES}H"),
    ("firmware_timestamp", "Q"),
    ("voltage_soc", "H"),
    ("voltage_gfx", "H"),
    ("voltage_mem", "H"),
    ("padding1", "H"),
    ("indep_throttle_status", "Q"),
]

_V2_3_FIELDS = _HEADER_FIELDS + [
    ("temperature_gfx", "H"),
    ("temperature_soc", "H"),
    ("temperature_core", "8H"),
    ("temperature_l3", "2H"),
    ("average_gfx_activity", "H"),
    ("average_mm_activity", "H"),
    ("system_clock_counter", "Q"),
    ("average_socket_power", "H"),
    ("average_cpu_power", "H"),
    ("average_soc_power", "H"),
    ("average_gfx_power", "H"),
    ("average_core_power", "8H"),
    ("average_gfxclk_frequency", "H"),
    ("average_socclk_frequency", "H"),
    ("average_uclk_frequency", "H"),
    ("average_fclk_frequency", "H"),
    ("average_vclk_frequency", "H"),
    ("average_dclk_frequency", "H"),
    ("current_gfxclk", "H"),
    ("current_socclk", "H"),
    ("current_uclk", "H"),
    ("current_fclk", "H"),
    ("current_vclk", "H"),
    ("current_dclk", "H"),
    ("current_coreclk", "8H"),
    ("current_l3clk", "2H"),
    ("throttle_status", "I"),
    ("fan_pwm", "H"),
    ("padding", "3H"),
    ("indep_throttle_status", "Q"),
    ("average_temperature_gfx", "H"),
    ("average_temperature_soc", "H"),
    ("average_temperature_core", "8H"),
    ("average_temperature_l3", "2H"),
]


class _Layout:
    """A little-endian, naturally aligned C struct described field by field."""

    def __init__(self, fields: list[tuple[str, str]]) -> None:
        self.fields = fields
        self.struct = struct.Struct("<" + "".join(f for _, f in fields))

    @property
    def size(self) -> int:
        return self.struct.size

    def decode(self, data: bytes) -> SimpleNamespace:
        values = iter(self.struct.unpack_from(data))
        out = {}
        for name, fmt in self.fields:
            if len(fmt) > 1:
                out[name] = [next(values) for _ in range(int(fmt[:-1]))]
            else:
                out[name] = next(values)
        return SimpleNamespace(**out)


_HEADER = _Layout(_HEADER_FIELDS)
_V1_3 = _Layout(_V1_3_FIELDS)
_V2_3 = _Layout(_V2_3_FIELDS)

# The reader refuses files that fill this buffer completely.
_READ_BUFFER_SIZE = (max(_V1_3.size, _V2_3.size) // 8 + 1) * 8


def _valid(value: int) -> bool:
    return value != INVALID_METRIC


def _leading_valid(values: Sequence[int]) -> list[int]:
    """The entries before the first invalid one."""
    out = []
    for value in values:
        if not _valid(value):
            break
        out.append(value)
    return out


@dataclass(frozen=True)
class MetricsHeader:
    """The common header of every gpu_metrics table."""

    structure_size: int
    format_revision: int
    content_revision: int


@dataclass
class AmdgpuMetrics:
    """Values taken from one reading, or averaged over several."""

    gpu_load_percent: int = 0
    average_gfx_power_w: float = 0.0
    average_cpu_power_w: float = 0.0
    current_gfxclk_mhz: int = 0
    current_uclk_mhz: int = 0
    soc_temp_c: int = 0
    gpu_temp_c: int = 0
    apu_cpu_temp_c: int = 0
    is_power_throttled: bool = False
    is_current_throttled: bool = False
    is_temp_throttled: bool = False
    is_other_throttled: bool = False


def parse_header(data: bytes) -> MetricsHeader:
    """Decode the four-byte header; raises ValueError if too short."""
    if len(data) < _HEADER.size:
        raise ValueError("gpu_metrics data shorter than its header")
    h = _HEADER.decode(data)
    return MetricsHeader(h.structure_size, h.format_revision, h.content_revision)


def verify_metrics(path: str) -> Optional[str]:
    """Check that the metrics file has a supported layout.

    Returns "GPU" for a dedicated card (format 1), "APU" for an APU
    (format 2), or None if the file is unreadable or unsupported.
    """
    try:
        with open(path, "rb") as fh:
            data = fh.read(_HEADER.size)
    except OSError:
        return None
    if len(data) < _HEADER.size:
        log.debug("Failed to read the metrics header of '%s'", path)
        return None

    header = parse_header(data)
    if 1 <= header.content_revision <= 3:
        if header.format_revision == 1:
            return "GPU"
        if header.format_revision == 2:
            return "APU"
    log.warning(
        "Unsupported gpu_metrics version: %d.%d",
        header.format_revision,
        header.content_revision,
    )
    return None


def _parse_v1(data: bytes, metrics: AmdgpuMetrics) -> int:
    m = _V1_3.decode(data)
    metrics.gpu_load_percent = m.average_gfx_activity
    metrics.average_gfx_power_w = float(m.average_socket_power)
    metrics.current_gfxclk_mhz = m.current_gfxclk
    metrics.current_uclk_mhz = m.current_uclk
    metrics.gpu_temp_c = m.temperature_edge
    return m.indep_throttle_status


def _preferred(primary: int, *fallbacks: tuple[bool, int]) -> Optional[int]:
    if _valid(primary):
        return primary
    for allowed, value in fallbacks:
        if allowed and _valid(value):
            return value
    return None


def _parse_v2(
    data: bytes, content_revision: int, metrics: AmdgpuMetrics,
    cpu_temp_reader: Optional[CpuTempReader],
) -> int:
    m = _V2_3.decode(data)
    has_averages = content_revision >= 3

    metrics.gpu_load_percent = m.average_gfx_activity
    metrics.average_gfx_power_w = m.average_gfx_power / 1000.0

    if _valid(m.average_cpu_power):
        metrics.average_cpu_power_w = m.average_cpu_power / 1000.0
    elif _valid(m.average_core_power[0]):
        metrics.average_cpu_power_w = sum(
            p / 1000.0 for p in _leading_valid(m.average_core_power)
        )
    elif _valid(m.average_socket_power) and _valid(m.average_gfx_power):
        metrics.average_cpu_power_w = (
            m.average_socket_power / 1000.0 - m.average_gfx_power / 1000.0
        )
    else:
        metrics.average_cpu_power_w = 0.0

    metrics.current_gfxclk_mhz = _preferred(
        m.current_gfxclk, (True, m.average_gfxclk_frequency)
    ) or 0
    metrics.current_uclk_mhz = _preferred(
        m.current_uclk, (True, m.average_uclk_frequency)
    ) or 0

    soc = _preferred(m.temperature_soc, (has_averages, m.average_temperature_soc))
    metrics.soc_temp_c = soc // 100 if soc is not None else 0
    gfx = _preferred(m.temperature_gfx, (has_averages, m.average_temperature_gfx))
    metrics.gpu_temp_c = gfx // 100 if gfx is not None else 0

    if _valid(m.temperature_core[0]):
        metrics.apu_cpu_temp_c = max(_leading_valid(m.temperature_core)) // 100
    elif has_averages and _valid(m.average_temperature_core[0]):
        metrics.apu_cpu_temp_c = max(_leading_valid(m.average_temperature_core)) // 100
    else:
        temp = cpu_temp_reader() if cpu_temp_reader is not None else None
        metrics.apu_cpu_temp_c = temp if temp is not None else 0

    return m.indep_throttle_status


def parse_instant_metrics(
    data: bytes, cpu_temp_reader: Optional[CpuTempReader] = None
) -> AmdgpuMetrics:
    """Decode one gpu_metrics table.

    `cpu_temp_reader` supplies the CPU temperature in degrees Celsius for
    APUs whose table carries no core temperatures. Unknown formats give
    zeroed metrics.
    """
    header = parse_header(data)
    padded = bytes(data).ljust(max(_V1_3.size, _V2_3.size), b"\0")
    metrics = AmdgpuMetrics()
    throttle = 0
    if header.format_revision == 1:
        throttle = _parse_v1(padded, metrics)
    elif header.format_revision == 2:
        throttle = _parse_v2(padded, header.content_revision, metrics, cpu_temp_reader)

    metrics.is_power_throttled = (throttle & 0xFF) != 0
    metrics.is_current_throttled = ((throttle >> 16) & 0xFF) != 0
    metrics.is_temp_throttled = ((throttle >> 32) & 0xFFFF) != 0
    metrics.is_other_throttled = ((throttle >> 56) & 0xFF) != 0
    return metrics


def read_instant_metrics(
    path: str, cpu_temp_reader: Optional[CpuTempReader] = None
) -> Optional[AmdgpuMetrics]:
    """Read and decode the metrics file; None if unreadable or too large."""
    try:
        with open(path, "rb") as fh:
            data = fh.read(_READ_BUFFER_SIZE)
    except OSError:
        return None
    if len(data) >= _READ_BUFFER_SIZE:
        log.debug("amdgpu metrics file '%s' is larger than the buffer", path)
        return None
    if len(data) < _HEADER.size:
        return None
    return parse_instant_metrics(data, cpu_temp_reader)


def average_samples(samples: Sequence[AmdgpuMetrics]) -> AmdgpuMetrics:
    """Combine samples: integer means, float means and "any" for flags."""
    if not samples:
        raise ValueError("no samples to average")
    count = len(samples)

    def int_mean(name: str) -> int:
        return sum(getattr(s, name) for s in samples) // count

    def float_mean(name: str) -> float:
        return sum(getattr(s, name) for s in samples) / count

    def any_of(name: str) -> bool:
        return any(getattr(s, name) for s in samples)

    return AmdgpuMetrics(
        gpu_load_percent=int_mean("gpu_load_percent"),
        average_gfx_power_w=float_mean("average_gfx_power_w"),
        average_cpu_power_w=float_mean("average_cpu_power_w"),
        current_gfxclk_mhz=int_mean("current_gfxclk_mhz"),
        current_uclk_mhz=int_mean("current_uclk_mhz"),
        soc_temp_c=int_mean("soc_temp_c"),
        gpu_temp_c=int_mean("gpu_temp_c"),
        apu_cpu_temp_c=int_mean("apu_cpu_temp_c"),
        is_power_throttled=any_of("is_power_throttled"),
        is_current_throttled=any_of("is_current_throttled"),
        is_temp_throttled=any_of("is_temp_throttled"),
        is_other_throttled=any_of("is_other_throttled"),
    )


class AmdgpuPoller:
    """Samples the metrics file repeatedly and keeps an averaged view."""

    def __init__(
        self,
        path: str,
        cpu_temp_reader: Optional[CpuTempReader] = None,
        sample_count: int = METRICS_SAMPLE_COUNT,
        period: float = METRICS_POLLING_PERIOD_MS / 1000.0,
    ) -> None:
        if sample_count < 1:
            raise ValueError("sample_count must be at least 1")
        self.path = path
        self.cpu_temp_reader = cpu_temp_reader
        self.sample_count = sample_count
        self.period = period
        # Some GPUs report the load in hundredths of a percent.
        self.load_needs_dividing = False
        self._samples = [AmdgpuMetrics() for _ in range(sample_count)]
        self._metrics = AmdgpuMetrics()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _fix_load(self, metrics: AmdgpuMetrics) -> None:
        if self.load_needs_dividing or metrics.gpu_load_percent > 100:
            self.load_needs_dividing = True
            metrics.gpu_load_percent //= 100

    def sample_once(self) -> AmdgpuMetrics:
        """Take a full round of samples and publish their average."""
        for i in range(self.sample_count):
            sample = read_instant_metrics(self.path, self.cpu_temp_reader)
            if sample is not None:
                self._samples[i] = sample
            self._fix_load(self._samples[i])
            if self.period > 0 and self._stop.wait(self.period):
                break
        averaged = average_samples(self._samples)
        with self._lock:
            self._metrics = averaged
        return dataclasses.replace(averaged)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.sample_once()

    def start(self) -> None:
        """Take an initial reading and start sampling in the background."""
        if self._thread is not None:
            return
        initial = read_instant_metrics(self.path, self.cpu_temp_reader)
        if initial is not None:
            if initial.gpu_load_percent > 100:
                self.load_needs_dividing = True
                initial.gpu_load_percent //= 100
            with self._lock:
                self._metrics = initial
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop background sampling and wait for it to end."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def snapshot(self) -> AmdgpuMetrics:
        """A copy of the latest published metrics."""
        with self._lock:
            return dataclasses.replace(self._metrics)

    def __enter__(self) -> "AmdgpuPoller":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def __del__(self) -> None:
        self._stop.set()


__all__ = [
    "AmdgpuMetrics",
    "AmdgpuPoller",
    "MetricsHeader",
    "average_samples",
    "parse_header",
    "parse_instant_metrics",
    "read_instant_metrics",
    "verify_metrics",
]


def _sleep(seconds: float) -> None:
    time.sleep(seconds)