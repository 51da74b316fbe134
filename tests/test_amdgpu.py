import struct
import time

import pytest

from hudmon.amdgpu import (
    AmdgpuMetrics,
    AmdgpuPoller,
    MetricsHeader,
    average_samples,
    parse_header,
    parse_instant_metrics,
    read_instant_metrics,
    verify_metrics,
)

V1_OFFSETS = {
    "temperature_edge": (4, "H"),
    "average_gfx_activity": (16, "H"),
    "average_socket_power": (22, "H"),
    "current_gfxclk": (54, "H"),
    "current_uclk": (58, "H"),
    "indep_throttle_status": (112, "Q"),
}

V2_OFFSETS = {
    "temperature_gfx": (4, "H"),
    "temperature_soc": (6, "H"),
    "temperature_core": (8, "8H"),
    "average_gfx_activity": (28, "H"),
    "average_socket_power": (40, "H"),
    "average_cpu_power": (42, "H"),
    "average_gfx_power": (46, "H"),
    "average_core_power": (48, "8H"),
    "average_gfxclk_frequency": (64, "H"),
    "average_uclk_frequency": (68, "H"),
    "current_gfxclk": (76, "H"),
    "current_uclk": (80, "H"),
    "indep_throttle_status": (120, "Q"),
    "average_temperature_gfx": (128, "H"),
    "average_temperature_soc": (130, "H"),
    "average_temperature_core": (132, "8H"),
}

INVALID = 0xFFFF


def _build(size, fmt_rev, content_rev, offsets, fields):
    buf = bytearray(size)
    struct.pack_into("<HBB", buf, 0, size, fmt_rev, content_rev)
    for name, value in fields.items():
        offset, fmt = offsets[name]
        if isinstance(value, list):
            value = value + [INVALID] * (8 - len(value))
            struct.pack_into("<" + fmt, buf, offset, *value)
        else:
            struct.pack_into("<" + fmt, buf, offset, value)
    return bytes(buf)


def make_v1(content_rev=3, **fields):
    return _build(120, 1, content_rev, V1_OFFSETS, fields)


def make_v2(content_rev=3, **fields):
    return _build(152, 2, content_rev, V2_OFFSETS, fields)


def test_parse_header():
    assert parse_header(bytes([120, 0, 1, 3])) == MetricsHeader(120, 1, 3)


def test_parse_header_too_short():
    with pytest.raises(ValueError):
        parse_header(b"\x01\x02")


@pytest.mark.parametrize(
    "data, expected",
    [
        (make_v1(content_rev=3), "GPU"),
        (make_v1(content_rev=1), "GPU"),
        (make_v2(content_rev=3), "APU"),
        (make_v1(content_rev=0), None),
        (make_v2(content_rev=4), None),
        (_build(120, 3, 1, V1_OFFSETS, {}), None),
        (b"\x01\x02", None),
    ],
)
def test_verify_metrics(tmp_path, data, expected):
    path = tmp_path / "gpu_metrics"
    path.write_bytes(data)
    assert verify_metrics(str(path)) == expected


def test_verify_metrics_missing(tmp_path):
    assert verify_metrics(str(tmp_path / "nope")) is None


def test_v1_fields():
    data = make_v1(
        average_gfx_activity=55,
        average_socket_power=30,
        current_gfxclk=1800,
        current_uclk=1000,
        temperature_edge=65,
    )
    m = parse_instant_metrics(data)
    assert m.gpu_load_percent == 55
    assert m.average_gfx_power_w == 30.0
    assert m.current_gfxclk_mhz == 1800
    assert m.current_uclk_mhz == 1000
    assert m.gpu_temp_c == 65
    assert m.average_cpu_power_w == 0.0


@pytest.mark.parametrize(
    "bits, flag",
    [
        (1 << 0, "is_power_throttled"),
        (1 << 16, "is_current_throttled"),
        (1 << 32, "is_temp_throttled"),
        (1 << 56, "is_other_throttled"),
    ],
)
def test_throttle_flags(bits, flag):
    m = parse_instant_metrics(make_v1(indep_throttle_status=bits))
    flags = {
        name: getattr(m, name)
        for name in (
            "is_power_throttled",
            "is_current_throttled",
            "is_temp_throttled",
            "is_other_throttled",
        )
    }
    assert flags.pop(flag) is True
    assert not any(flags.values())


def test_v2_preferred_values():
    data = make_v2(
        average_gfx_activity=40,
        average_cpu_power=5000,
        current_gfxclk=600,
        current_uclk=800,
        temperature_soc=4500,
        temperature_gfx=5200,
        temperature_core=[4000, 5500],
    )
    m = parse_instant_metrics(data)
    assert m.gpu_load_percent == 40
    assert m.average_cpu_power_w == pytest.approx(5.0)
    assert m.current_gfxclk_mhz == 600
    assert m.current_uclk_mhz == 800
    assert m.soc_temp_c == 45
    assert m.gpu_temp_c == 52
    assert m.apu_cpu_temp_c == 55


def test_v2_core_power_sum_stops_at_invalid():
    data = make_v2(average_cpu_power=INVALID, average_core_power=[1000, 2000])
    m = parse_instant_metrics(data)
    assert m.average_cpu_power_w == pytest.approx(3.0)


def test_v2_cpu_power_from_socket_minus_gfx():
    data = make_v2(
        average_cpu_power=INVALID,
        average_core_power=[INVALID],
        average_socket_power=9000,
        average_gfx_power=4000,
    )
    m = parse_instant_metrics(data)
    assert m.average_cpu_power_w == pytest.approx(9.0 - 4.0)
    assert m.average_gfx_power_w == pytest.approx(4.0)


def test_v2_cpu_power_gives_up():
    data = make_v2(
        average_cpu_power=INVALID,
        average_core_power=[INVALID],
        average_socket_power=INVALID,
        average_gfx_power=INVALID,
    )
    assert parse_instant_metrics(data).average_cpu_power_w == 0.0


def test_v2_clock_fallbacks():
    data = make_v2(
        current_gfxclk=INVALID,
        average_gfxclk_frequency=1200,
        current_uclk=INVALID,
        average_uclk_frequency=INVALID,
    )
    m = parse_instant_metrics(data)
    assert m.current_gfxclk_mhz == 1200
    assert m.current_uclk_mhz == 0


def test_v2_average_temps_need_revision_3():
    fields = dict(
        temperature_soc=INVALID,
        average_temperature_soc=4500,
        temperature_gfx=INVALID,
        average_temperature_gfx=4500,
    )
    newer = parse_instant_metrics(make_v2(content_rev=3, **fields))
    older = parse_instant_metrics(make_v2(content_rev=2, **fields))
    assert newer.soc_temp_c == newer.gpu_temp_c == 45
    assert older.soc_temp_c == older.gpu_temp_c == 0


def test_v2_cpu_temp_from_average_cores():
    data = make_v2(temperature_core=[INVALID], average_temperature_core=[3000, 6100])
    assert parse_instant_metrics(data).apu_cpu_temp_c == 61


def test_v2_cpu_temp_from_reader():
    data = make_v2(temperature_core=[INVALID], average_temperature_core=[INVALID])
    assert parse_instant_metrics(data, lambda: 70).apu_cpu_temp_c == 70
    assert parse_instant_metrics(data, lambda: None).apu_cpu_temp_c == 0
    assert parse_instant_metrics(data).apu_cpu_temp_c == 0


def test_unknown_format_gives_zeroes():
    data = _build(120, 7, 1, V1_OFFSETS, {"average_gfx_activity": 50})
    assert parse_instant_metrics(data) == AmdgpuMetrics()


def test_read_instant_metrics(tmp_path):
    path = tmp_path / "gpu_metrics"
    path.write_bytes(make_v1(average_gfx_activity=33))
    m = read_instant_metrics(str(path))
    assert m.gpu_load_percent == 33


def test_read_instant_metrics_too_large(tmp_path):
    path = tmp_path / "gpu_metrics"
    path.write_bytes(make_v2() + bytes(8))
    assert read_instant_metrics(str(path)) is None


def test_read_instant_metrics_missing(tmp_path):
    assert read_instant_metrics(str(tmp_path / "nope")) is None


def test_average_of_identical_samples_is_unchanged():
    sample = AmdgpuMetrics(
        gpu_load_percent=42,
        average_gfx_power_w=12.5,
        average_cpu_power_w=3.25,
        current_gfxclk_mhz=1500,
        current_uclk_mhz=900,
        soc_temp_c=50,
        gpu_temp_c=60,
        apu_cpu_temp_c=70,
        is_temp_throttled=True,
    )
    assert average_samples([sample, sample, sample]) == sample


def test_average_flags_are_any_and_ints_within_range():
    a = AmdgpuMetrics(gpu_load_percent=10, is_power_throttled=True)
    b = AmdgpuMetrics(gpu_load_percent=21)
    avg = average_samples([a, b])
    assert avg.is_power_throttled is True
    assert avg.is_other_throttled is False
    assert 10 <= avg.gpu_load_percent <= 21
    assert isinstance(avg.gpu_load_percent, int)


def test_average_empty_raises():
    with pytest.raises(ValueError):
        average_samples([])


def test_poller_divides_centipercent_load(tmp_path):
    path = tmp_path / "gpu_metrics"
    path.write_bytes(make_v1(average_gfx_activity=5000, current_gfxclk=1800))
    poller = AmdgpuPoller(str(path), sample_count=2, period=0)
    result = poller.sample_once()
    assert result.gpu_load_percent == 50
    assert poller.load_needs_dividing is True
    assert poller.snapshot() == result


def test_poller_rejects_zero_samples(tmp_path):
    with pytest.raises(ValueError):
        AmdgpuPoller(str(tmp_path / "x"), sample_count=0)


def test_poller_start_and_stop(tmp_path):
    path = tmp_path / "gpu_metrics"
    path.write_bytes(make_v1(average_gfx_activity=30, temperature_edge=65))
    with AmdgpuPoller(str(path), sample_count=3, period=0.001) as poller:
        assert poller.snapshot().gpu_load_percent == 30
        deadline = time.monotonic() + 5
        while poller.snapshot().gpu_temp_c != 65 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert poller.snapshot().gpu_temp_c == 65
    assert poller._thread is None