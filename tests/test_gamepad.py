import pytest

from hudmon.gamepad import Gamepad, battery_level, find_gamepad_paths, read_gamepads


def make_pad(root, name, **files):
    pad = root / name
    pad.mkdir(parents=True)
    for fname, value in files.items():
        (pad / fname).write_text(f"{value}\n")
    return str(pad)


def test_find_paths_selects_controllers(tmp_path):
    xbox = make_pad(tmp_path, "gip0")
    sony = make_pad(tmp_path, "sony_controller_battery_aa")
    make_pad(tmp_path, "BAT0")
    make_pad(tmp_path, "AC")
    assert sorted(find_gamepad_paths(str(tmp_path))) == sorted([xbox, sony])


def test_find_paths_missing_root(tmp_path):
    assert find_gamepad_paths(str(tmp_path / "nope")) == []


@pytest.mark.parametrize(
    "percent, level",
    [(0, "Low"), (25, "Low"), (26, "Normal"), (49, "Normal"),
     (50, "High"), (74, "High"), (75, "Full"), (100, "Full"), (101, None)],
)
def test_battery_level(percent, level):
    assert battery_level(percent) == level


def test_single_xbox_pad(tmp_path):
    path = make_pad(tmp_path, "gip0", capacity=80, status="Discharging")
    pads = read_gamepads([path])
    assert pads == [Gamepad(name="XBOX PAD", battery="Full", report_percent=True,
                            battery_percent="80", is_charging=False)]


def test_multiple_pads_are_numbered_and_sorted(tmp_path):
    paths = [make_pad(tmp_path, n, capacity=10) for n in ("xpadneo-b", "gip-a")]
    names = [p.name for p in read_gamepads(paths)]
    assert names == ["XBOX PAD-1", "XBOX PAD-2"]
    assert names == sorted(names)


def test_capacity_level_fallback_and_charging(tmp_path):
    path = make_pad(tmp_path, "nintendo_switch_controller_x",
                    capacity_level="Critical", status="Charging")
    (pad,) = read_gamepads([path])
    assert pad.name == "SWITCH PAD"
    assert pad.battery == "Critical"
    assert pad.report_percent is False
    assert pad.is_charging is True


def test_full_status_counts_as_charging(tmp_path):
    path = make_pad(tmp_path, "ps-controller-battery-x", status="Full", capacity=60)
    (pad,) = read_gamepads([path])
    assert pad.is_charging is True
    assert pad.name == "DS4/5 PAD"
    assert pad.battery == "High"


def test_bad_capacity_raises(tmp_path):
    path = make_pad(tmp_path, "hid-e4x", capacity="none")
    with pytest.raises(ValueError):
        read_gamepads([path])