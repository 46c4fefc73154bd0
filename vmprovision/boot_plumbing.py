"""Write initramfs features, extlinux settings, fstab, console and service links."""
import os
import re
import shutil
from typing import Iterable

from .executil import trace
from .model import BootConfig

MKINITFS_CONF = "etc/mkinitfs/mkinitfs.conf"
EXTLINUX_CONF = "etc/update-extlinux.conf"
BASE_INITFS_FEATURES = ("base",)
SERIAL_BAUD = 115200

SERVICES = {
    "sysinit": ("devfs", "dmesg", "mdev", "hwdrivers", "cgroups"),
    "boot": ("modules", "hwclock", "swap", "hostname", "sysctl", "bootmisc", "syslog", "seedrng"),
    "shutdown": ("killprocs", "savecache", "mount-ro"),
}
# seedrng replaced urandom; older trees only ship the latter
SERVICE_FALLBACKS = {"seedrng": "urandom"}


def _write(path: str, text: str) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(text)
        try:
            fh.flush()
            os.fsync(fh.fileno())
        except OSError:
            pass


def _read_lines(path: str) -> list[str]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read().splitlines()
    except FileNotFoundError:
        return []


def initfs_features(fstype: str, requested: Iterable[str]) -> list[str]:
    merged = set(BASE_INITFS_FEATURES) | {fstype}
    merged.update(f for f in requested if f)
    return sorted(merged)


def write_initfs_features(mnt: str, fstype: str, requested: Iterable[str]) -> list[str]:
    path = os.path.join(mnt, MKINITFS_CONF)
    features = initfs_features(fstype, requested)
    wanted = f'features="{" ".join(features)}"'
    lines = [l for l in _read_lines(path) if not re.match(r"^\s*features=", l)]
    lines.insert(0, wanted)
    _write(path, "\n".join(lines) + "\n")
    trace("boot.initfs_features", path=path, features=features)
    return features


def _set_option(lines: list[str], key: str, value: str) -> list[str]:
    pattern = re.compile(rf"^[#\s]*{re.escape(key)}=.*$")
    out: list[str] = []
    replaced = False
    for line in lines:
        if pattern.match(line):
            if not replaced:
                out.append(f"{key}={value}")
                replaced = True
            continue
        out.append(line)
    if not replaced:
        out.append(f"{key}={value}")
    return out


def kernel_opts(boot: BootConfig) -> list[str]:
    opts = list(boot.kernel_opts)
    if boot.serial_port:
        opts.append(f"console={boot.serial_port},{SERIAL_BAUD}")
    return opts


def write_extlinux_conf(mnt: str, boot: BootConfig) -> str:
    """Point the extlinux generator at the real root by UUID."""

    path = os.path.join(mnt, EXTLINUX_CONF)
    lines = _read_lines(path)
    settings = [
        ("root", f"UUID={boot.root_uuid}"),
        ("default", boot.kernel_flavor),
        ("modules", ",".join(boot.modules)),
        ("default_kernel_opts", '"' + " ".join(kernel_opts(boot)) + '"'),
    ]
    if boot.serial_port:
        settings.append(("serial_port", boot.serial_port))
    for key, value in settings:
        lines = _set_option(lines, key, value)
    if not boot.serial_port:
        lines = [l for l in lines if not re.match(r"^serial_port=", l)]
    _write(path, "\n".join(lines) + "\n")
    trace("boot.extlinux_conf", path=path, settings=dict(settings))
    return path


def write_fstab(mnt: str, root_uuid: str, fstype: str) -> str:
    fstab = os.path.join(mnt, "etc/fstab")
    _write(fstab, f"UUID={root_uuid}\t/\t{fstype}\tnoatime\t0 1\n")
    return fstab


def enable_serial_console(mnt: str, port: str) -> None:
    securetty = os.path.join(mnt, "etc/securetty")
    lines = _read_lines(securetty)
    if port not in (l.strip() for l in lines):
        lines.append(port)
        _write(securetty, "\n".join(lines) + "\n")

    inittab = os.path.join(mnt, "etc/inittab")
    lines = _read_lines(inittab)
    pattern = re.compile(rf"^[#\s]*({re.escape(port)}:.*)$")
    enabled = False
    for idx, line in enumerate(lines):
        m = pattern.match(line)
        if m:
            lines[idx] = m.group(1)
            enabled = True
    if not enabled:
        lines.append(f"{port}::respawn:/sbin/getty -L {port} {SERIAL_BAUD} vt100")
    _write(inittab, "\n".join(lines) + "\n")
    trace("boot.serial_console", port=port)


def _service_present(mnt: str, name: str) -> bool:
    return os.path.exists(os.path.join(mnt, "etc/init.d", name))


def enable_services(mnt: str) -> dict[str, list[str]]:
    """Link init scripts into their runlevels, skipping ones the tree lacks."""

    enabled: dict[str, list[str]] = {}
    for level, names in SERVICES.items():
        level_dir = os.path.join(mnt, "etc/runlevels", level)
        os.makedirs(level_dir, exist_ok=True)
        enabled[level] = []
        for name in names:
            if not _service_present(mnt, name):
                fallback = SERVICE_FALLBACKS.get(name)
                if fallback and _service_present(mnt, fallback):
                    name = fallback
                else:
                    trace("boot.service_missing", runlevel=level, service=name)
                    continue
            link = os.path.join(level_dir, name)
            if not os.path.lexists(link):
                os.symlink(f"/etc/init.d/{name}", link)
            enabled[level].append(name)
    trace("boot.services", enabled=enabled)
    return enabled


def copy_resolv_conf(mnt: str, src: str = "/etc/resolv.conf") -> bool:
    if not os.path.isfile(src):
        trace("boot.resolv_conf_missing", src=src)
        return False
    dst = os.path.join(mnt, "etc/resolv.conf")
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    if os.path.islink(dst):
        os.unlink(dst)
    shutil.copyfile(src, dst)
    return True
