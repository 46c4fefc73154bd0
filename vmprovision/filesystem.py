"""Filesystem creation on the raw attached device."""

from __future__ import annotations

import shutil
from subprocess import CalledProcessError

from .errors import BootConfigError, FilesystemCreateError
from .executil import failure_message, run, trace

# extlinux cannot boot ext4 with 64bit; discard is pointless on an image file.
MKFS_DEFAULTS: dict[str, list[str]] = {
    "ext2": ["-F", "-E", "nodiscard"],
    "ext3": ["-F", "-E", "nodiscard"],
    "ext4": ["-F", "-O", "^64bit", "-E", "nodiscard"],
    "btrfs": ["-f", "-K"],
    "xfs": ["-f", "-K"],
}
SUPPORTED_FILESYSTEMS = tuple(MKFS_DEFAULTS)


def mkfs_command(device: str, fstype: str, label: str = "root") -> list[str]:
    if fstype not in MKFS_DEFAULTS:
        raise FilesystemCreateError(
            f"unsupported filesystem {fstype!r}; expected one of {', '.join(SUPPORTED_FILESYSTEMS)}",
            state={"device": device, "fstype": fstype},
        )
    return [f"mkfs.{fstype}", "-L", label, *MKFS_DEFAULTS[fstype], device]


class MkfsMaker:
    def make(self, device: str, fstype: str) -> None:
        cmd = mkfs_command(device, fstype)
        if shutil.which(cmd[0]) is None:
            raise FilesystemCreateError(
                f"{cmd[0]} not found on host", state={"device": device, "fstype": fstype}
            )
        try:
            run(cmd, check=True)
        except CalledProcessError as exc:
            raise FilesystemCreateError(
                f"{cmd[0]} failed on {device}: {failure_message(exc)}",
                state={"device": device, "fstype": fstype, "rc": exc.returncode},
            ) from exc
        trace("filesystem.created", device=device, fstype=fstype)

    def uuid(self, device: str) -> str:
        r = run(["blkid", "-s", "UUID", "-o", "value", device], check=False)
        value = (r.out or "").strip()
        if not value:
            raise BootConfigError(
                f"could not read filesystem UUID of {device}", state={"device": device, "rc": r.rc}
            )
        return value
