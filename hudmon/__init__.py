"""CPU, AMD GPU, battery and gamepad telemetry readers and overlay message formats."""

__version__ = "0.1.0"

__all__ = [
    "amdgpu",
    "battery",
    "cpu",
    "file_utils",
    "gamepad",
    "mangoapp_proto",
]