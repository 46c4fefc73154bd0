"""extlinux installed on the raw filesystem from inside the chroot."""

from __future__ import annotations

from subprocess import CalledProcessError

from .boot_plumbing import write_extlinux_conf
from .capabilities import PackageInstaller
from .errors import BootConfigError
from .executil import failure_message, run, trace
from .model import BootConfig


class ExtlinuxInstaller:
    package = "syslinux"

    def _chroot(self, root: str, *cmd: str) -> None:
        try:
            run(["chroot", root, *cmd], check=True)
        except CalledProcessError as exc:
            raise BootConfigError(
                f"{cmd[0]} failed in {root}: {failure_message(exc)}",
                state={"root": root, "cmd": list(cmd), "rc": exc.returncode},
            ) from exc

    def install(self, root: str, installer: PackageInstaller) -> None:
        # the package trigger would run update-extlinux before root= is set
        installer.install(root, [self.package], no_scripts=True)
        self._chroot(root, "extlinux", "--install", "/boot")
        trace("bootloader.installed", root=root)

    def configure(self, root: str, boot: BootConfig) -> None:
        write_extlinux_conf(root, boot)
        self._chroot(root, "update-extlinux", "--warn-errors")
        trace("bootloader.configured", root=root, flavor=boot.kernel_flavor)
