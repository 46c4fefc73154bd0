"""Interfaces for the external collaborators the orchestrator drives.

The concrete implementations shell out to ``qemu-img``, ``mkfs.*``, ``apk``
and ``extlinux``; tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from .model import BootConfig, ImageTarget


class BlockImageProvider(Protocol):
    def exists(self, image: ImageTarget) -> bool: ...

    def create(self, image: ImageTarget) -> None: ...


class FilesystemMaker(Protocol):
    def make(self, device: str, fstype: str) -> None: ...

    def uuid(self, device: str) -> str: ...


class PackageInstaller(Protocol):
    def install(self, root: str, packages: Sequence[str], *, initdb: bool = False,
                no_scripts: bool = False) -> None: ...

    def available(self, root: str, package: str) -> bool: ...


class BootloaderInstaller(Protocol):
    def install(self, root: str, installer: PackageInstaller) -> None: ...

    def configure(self, root: str, boot: BootConfig) -> None: ...


@dataclass
class Capabilities:
    images: BlockImageProvider
    filesystems: FilesystemMaker
    packages: PackageInstaller
    bootloader: BootloaderInstaller


def default_capabilities() -> Capabilities:
    from .apk import ApkInstaller
    from .bootloader import ExtlinuxInstaller
    from .filesystem import MkfsMaker
    from .image import QemuImageProvider

    return Capabilities(
        images=QemuImageProvider(),
        filesystems=MkfsMaker(),
        packages=ApkInstaller(),
        bootloader=ExtlinuxInstaller(),
    )
