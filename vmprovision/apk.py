"""apk package installs into the target root and on the host."""

from __future__ import annotations

import os
import shutil
from subprocess import CalledProcessError
from typing import Iterable, Sequence

from .errors import ConfigurationError, PackageInstallError
from .executil import failure_message, run, trace

HOST_VIRTUAL_PACKAGE = ".vmprovision-deps"
ALPINE_RELEASE = "/etc/alpine-release"

# host binary -> Alpine package providing it
HOST_TOOLS = {
    "qemu-img": "qemu-img",
    "qemu-nbd": "qemu-img",
    "mkfs.ext2": "e2fsprogs",
    "mkfs.ext3": "e2fsprogs",
    "mkfs.ext4": "e2fsprogs",
    "mkfs.btrfs": "btrfs-progs",
    "mkfs.xfs": "xfsprogs",
    "blkid": "blkid",
}


class ApkInstaller:
    def __init__(self, apk: str = "apk") -> None:
        self.apk = apk

    def install(self, root: str, packages: Sequence[str], *, initdb: bool = False,
                no_scripts: bool = False) -> None:
        if not packages:
            return
        cmd = [self.apk, "--root", root, "--no-progress", "add", "--update-cache"]
        if initdb:
            cmd.append("--initdb")
        if no_scripts:
            cmd.append("--no-scripts")
        cmd += list(packages)
        try:
            run(cmd, check=True, capture=False)
        except CalledProcessError as exc:
            raise PackageInstallError(
                f"apk add {' '.join(packages)} failed (exit status {exc.returncode})",
                state={"root": root, "packages": list(packages), "rc": exc.returncode},
            ) from exc
        trace("apk.installed", root=root, packages=list(packages))

    def available(self, root: str, package: str) -> bool:
        r = run([self.apk, "--root", root, "search", "--exact", "--quiet", package], check=False)
        return r.rc == 0 and bool((r.out or "").strip())


def is_alpine_host(release_file: str = ALPINE_RELEASE) -> bool:
    return os.path.isfile(release_file)


def missing_tools(tools: Iterable[str]) -> list[str]:
    return [t for t in tools if shutil.which(t) is None]


def install_host_packages(tools: Iterable[str], apk: str = "apk",
                          release_file: str = ALPINE_RELEASE) -> bool:
    """Make ``tools`` available on the host.

    On Alpine the missing ones are installed as a virtual package set, and
    ``True`` is returned so the caller can schedule its removal. Elsewhere a
    missing tool is a configuration error.
    """

    missing = missing_tools(tools)
    if not missing:
        return False
    if not is_alpine_host(release_file) or shutil.which(apk) is None:
        raise ConfigurationError(
            "missing host tools: " + ", ".join(missing), state={"missing": missing}
        )
    packages = sorted({HOST_TOOLS.get(t, t) for t in missing})
    try:
        run([apk, "add", "--no-progress", "--virtual", HOST_VIRTUAL_PACKAGE, *packages], check=True)
    except CalledProcessError as exc:
        raise PackageInstallError(
            f"failed to install host packages {', '.join(packages)}: {failure_message(exc)}",
            state={"packages": packages},
        ) from exc
    trace("apk.host_virtual_added", name=HOST_VIRTUAL_PACKAGE, packages=packages)
    return True


def remove_host_packages(apk: str = "apk") -> None:
    try:
        run([apk, "del", "--no-progress", HOST_VIRTUAL_PACKAGE], check=True)
    except CalledProcessError as exc:
        raise PackageInstallError(
            f"failed to remove {HOST_VIRTUAL_PACKAGE}: {failure_message(exc)}",
            state={"name": HOST_VIRTUAL_PACKAGE},
        ) from exc
    trace("apk.host_virtual_removed", name=HOST_VIRTUAL_PACKAGE)
