"""Helpers for reading small system files, listing directories and locating
user directories."""

from __future__ import annotations

import enum
import logging
import os
import stat
from pathlib import Path
from typing import Iterable, Optional, Sequence

log = logging.getLogger(__name__)

_PROC_SELF = "/proc/self"


class LsFlags(enum.IntFlag):
    """Which kinds of directory entries `ls` reports."""

    DIRS = 0x01
    FILES = 0x02


def _ends_with(text: str, suffix: str, icase: bool = False) -> bool:
    if icase:
        return text.lower().endswith(suffix.lower())
    return text.endswith(suffix)


def read_line(filename: str | os.PathLike) -> str:
    """Return the first line of a file without its newline, or "" on failure."""
    try:
        with open(filename, encoding="utf-8", errors="replace", newline="") as fh:
            line = fh.readline()
    except OSError:
        return ""
    return line.split("\n", 1)[0]


def ls(
    root: str | os.PathLike,
    prefix: Optional[str] = None,
    flags: LsFlags = LsFlags.DIRS,
) -> list[str]:
    """List entry names in `root` matching `prefix` and the kinds in `flags`.

    Symbolic links are followed; broken links are skipped.
    """
    names: list[str] = []
    try:
        entries = list(os.scandir(root))
    except OSError as exc:
        log.error("Error opening directory '%s': %s", root, exc.strerror)
        return names

    for entry in entries:
        if prefix and not entry.name.startswith(prefix):
            continue
        if entry.name in (".", ".."):
            continue
        try:
            mode = os.stat(entry.path).st_mode
        except OSError:
            continue
        if (flags & LsFlags.DIRS and stat.S_ISDIR(mode)) or (
            flags & LsFlags.FILES and stat.S_ISREG(mode)
        ):
            names.append(entry.name)
    return names


def file_exists(path: str | os.PathLike) -> bool:
    """True if `path` exists and is not a directory."""
    try:
        return not stat.S_ISDIR(os.stat(path).st_mode)
    except OSError:
        return False


def dir_exists(path: str | os.PathLike) -> bool:
    """True if `path` exists and is a directory."""
    try:
        return stat.S_ISDIR(os.stat(path).st_mode)
    except OSError:
        return False


def read_symlink(link: str | os.PathLike) -> str:
    """Return the target of a symbolic link, or "" if it cannot be read."""
    try:
        return os.readlink(link)
    except (OSError, ValueError):
        return ""


def get_basename(path: str) -> str:
    """Return the part after the last '/' or '\\'; the whole path if there is none
    or if the separator is the last character."""
    n = max(path.rfind("/"), path.rfind("\\"))
    if n == -1 or n >= len(path) - 1:
        return path
    return path[n + 1:]


def get_exe_path() -> str:
    """Path of the running executable."""
    return read_symlink(f"{_PROC_SELF}/exe")


def _read_cmdline() -> list[str]:
    try:
        raw = Path(f"{_PROC_SELF}/cmdline").read_bytes()
    except OSError:
        return []
    args = raw.decode("utf-8", errors="replace").split("\0")
    if args and args[-1] == "":
        args.pop()
    return args


def _strip_ext(name: str, keep_ext: bool) -> str:
    if keep_ext:
        return name
    dot = name.rfind(".")
    return name if dot == -1 else name[:dot]


def get_wine_exe_name(
    keep_ext: bool = False,
    exe_path: Optional[str] = None,
    comm: Optional[str] = None,
    cmdline: Optional[Iterable[str]] = None,
) -> str:
    """Name of the Windows program run under wine, or "" if not under wine.

    `exe_path`, `comm` and `cmdline` default to the values of this process.
    """
    if exe_path is None:
        exe_path = get_exe_path()
    if not (
        _ends_with(exe_path, "wine-preloader")
        or _ends_with(exe_path, "wine64-preloader")
    ):
        return ""

    if comm is None:
        comm = read_line(f"{_PROC_SELF}/comm")
    if _ends_with(comm, ".exe", icase=True):
        return _strip_ext(comm, keep_ext)

    args: Sequence[str] = list(cmdline) if cmdline is not None else _read_cmdline()
    for arg in args:
        n = max(arg.rfind("/"), arg.rfind("\\"))
        if arg and n != -1 and n < len(arg) - 1:
            dot = -1 if keep_ext else arg.rfind(".")
            if dot < n:
                dot = len(arg)
            return arg[n + 1:dot]
        if _ends_with(arg, ".exe", icase=True):
            return _strip_ext(arg, keep_ext)
    return ""


def get_home_dir() -> str:
    """Value of HOME, or ""."""
    return os.environ.get("HOME", "")


def get_data_dir() -> str:
    """XDG data directory, falling back to ~/.local/share."""
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg is not None:
        return xdg
    home = get_home_dir()
    return home + "/.local/share" if home else home


def get_config_dir() -> str:
    """XDG config directory, falling back to ~/.config."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg is not None:
        return xdg
    home = get_home_dir()
    return home + "/.config" if home else home


def lib_loaded(lib: str, map_files_dir: str | os.PathLike = f"{_PROC_SELF}/map_files/") -> bool:
    """True if any mapped file of the process has `lib` in its path."""
    with os.scandir(map_files_dir) as entries:
        return any(lib in read_symlink(entry.path) for entry in entries)