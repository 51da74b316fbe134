# hudmon

Telemetry readers for a Linux performance overlay: CPU, AMD GPU, battery
and gamepad state taken from `/proc` and `/sys`, plus the binary frame and
control messages exchanged with a standalone overlay application.

The package has no dependencies outside the standard library.

## Modules

- `hudmon.file_utils`: helpers for procfs and sysfs: `read_line`, `ls`
  (filtered by `LsFlags.DIRS` / `LsFlags.FILES`), `file_exists`,
  `dir_exists`, `read_symlink`, `get_basename`, `get_exe_path`,
  `get_wine_exe_name`, `get_home_dir`, `get_data_dir`, `get_config_dir`
  and `lib_loaded`.
- `hudmon.cpu`: `CPUStats` computes per-core and total load from
  `/proc/stat` (`init`, `update_cpu_data`), core clocks
  (`update_core_mhz`), package temperature from hwmon (`get_cpu_file`,
  `update_cpu_temp`) and package power (`init_cpu_power_data`,
  `update_cpu_power`) from k10temp, zenpower, RAPL or a caller-supplied APU
  power source. `calculate_cpu_data` does the load arithmetic on a
  `CPUData` record.
- `hudmon.amdgpu`: `verify_metrics` tells whether a `gpu_metrics` file is
  from a discrete card (`"GPU"`, format 1) or an APU (`"APU"`, format 2);
  `parse_instant_metrics` and `read_instant_metrics` decode it into
  `AmdgpuMetrics`; `average_samples` combines readings; `AmdgpuPoller`
  samples in a background thread and publishes averages through
  `snapshot`.
- `hudmon.battery`: `BatteryStats` reports charge percentage, discharge
  power in watts and estimated hours remaining for up to two batteries.
- `hudmon.gamepad`: `find_gamepad_paths` finds controller power supplies
  (Xbox, DualShock 4, DualSense, Switch, 8BitDo) and `read_gamepads`
  reads them into `Gamepad` records sorted by name.
- `hudmon.mangoapp_proto`: `decode_frame_message` reads frame reports into
  `FrameMessage`; `CtrlMessage` packs and unpacks control messages;
  `build_ctrl_message` turns `set ATTR VALUE` / `toggle ATTR` arguments
  into one, raising `UsageError` on bad input; `apply_action` applies an
  `Action` to a flag; `FrametimeHistory` keeps the last 200 frame times
  and latencies.

## Examples

CPU load and clocks:

```python
from hudmon.cpu import CPUStats

with CPUStats() as stats:
    if stats.init():
        stats.update_cpu_data()
        stats.update_core_mhz()
        print(stats.total.percent, stats.total.cpu_mhz)
```

AMD GPU metrics, averaged in the background:

```python
from hudmon.amdgpu import AmdgpuPoller, verify_metrics

path = "/sys/class/drm/card0/device/gpu_metrics"
if verify_metrics(path):
    with AmdgpuPoller(path) as poller:
        metrics = poller.snapshot()
        print(metrics.gpu_load_percent, metrics.current_gfxclk_mhz)
```

Battery and gamepads:

```python
from hudmon.battery import BatteryStats
from hudmon.gamepad import find_gamepad_paths, read_gamepads

battery = BatteryStats()
battery.update()
print(battery.current_percent, battery.current_watt)

for pad in read_gamepads(find_gamepad_paths()):
    print(pad.name, pad.battery, pad.is_charging)
```

A control message that toggles the overlay:

```python
from hudmon.mangoapp_proto import build_ctrl_message

payload = build_ctrl_message(["toggle", "no_display"]).pack()
```

Every reader that touches the filesystem takes its root directory or file
path as a parameter, so it can be pointed at a copy of the tree for testing.

## What this package does not do

- It draws nothing: there is no overlay, window or font handling.
- It does not find or parse configuration files, and has no process
  blacklist.
- It has no control socket server and no command-line tool. Control and
  frame messages are encoded and decoded only; sending them over a message
  queue or socket is left to the caller.