"""Provisioning pipeline: the ordered stages run against the mounted root.

Every stage failure is fatal; nothing here attempts to repair a half-built
tree. The caller owns mounts and teardown.
"""

from __future__ import annotations

from .boot_plumbing import (
    copy_resolv_conf,
    enable_serial_console,
    enable_services,
    write_fstab,
    write_initfs_features,
)
from .capabilities import Capabilities, PackageInstaller
from .executil import info, ok, trace
from .model import BlockAttachment, BootConfig, MountTree, RootfsConfig
from .mounts import bind_system_dirs
from .repositories import write_keys, write_repositories

BASE_PACKAGES = ("alpine-base",)
BOOT_MODULES = ("sd-mod", "usb-storage")
SERIAL_PORT = "ttyS0"

# Flavors tried, in order, when the default "virt" flavor is requested.
KERNEL_ALTERNATES = {"virt": ("lts", "vanilla")}


def select_kernel_flavor(requested: str, root: str, installer: PackageInstaller) -> str:
    alternates = KERNEL_ALTERNATES.get(requested)
    if not alternates:
        return requested
    for flavor in alternates[:-1]:
        if installer.available(root, f"linux-{flavor}"):
            trace("provision.kernel_flavor", requested=requested, chosen=flavor)
            return flavor
    trace("provision.kernel_flavor", requested=requested, chosen=alternates[-1], fallback=True)
    return alternates[-1]


def make_filesystem(attachment: BlockAttachment, config: RootfsConfig, caps: Capabilities) -> str:
    info(f"Formatting {attachment.device} as {config.fstype}")
    caps.filesystems.make(attachment.device, config.fstype)
    return caps.filesystems.uuid(attachment.device)


def setup_repositories(tree: MountTree, config: RootfsConfig) -> None:
    write_repositories(tree.root, config)
    write_keys(tree.root, config)


def install_base(tree: MountTree, caps: Capabilities) -> None:
    info("Installing base system")
    caps.packages.install(tree.root, BASE_PACKAGES, initdb=True)


def prepare_chroot(tree: MountTree) -> None:
    bind_system_dirs(tree)
    copy_resolv_conf(tree.root)


def install_kernel(tree: MountTree, config: RootfsConfig, caps: Capabilities) -> str:
    flavor = select_kernel_flavor(config.kernel_flavor, tree.root, caps.packages)
    info(f"Installing kernel linux-{flavor}")
    caps.packages.install(tree.root, [f"linux-{flavor}"])
    return flavor


def boot_config(root_uuid: str, flavor: str, config: RootfsConfig) -> BootConfig:
    return BootConfig(
        root_uuid=root_uuid,
        kernel_flavor=flavor,
        modules=(*BOOT_MODULES, config.fstype),
        serial_port=SERIAL_PORT if config.serial_console else None,
    )


def provision(attachment: BlockAttachment, tree: MountTree, root_uuid: str,
              config: RootfsConfig, caps: Capabilities) -> BootConfig:
    """Run stages 2-11 against an already formatted and mounted root."""

    setup_repositories(tree, config)
    install_base(tree, caps)
    prepare_chroot(tree)
    features = write_initfs_features(tree.root, config.fstype, config.initfs_features)
    trace("provision.initfs", features=features)
    flavor = install_kernel(tree, config, caps)

    boot = boot_config(root_uuid, flavor, config)
    info("Installing bootloader")
    caps.bootloader.install(tree.root, caps.packages)
    caps.bootloader.configure(tree.root, boot)

    write_fstab(tree.root, root_uuid, config.fstype)
    if boot.serial_port:
        enable_serial_console(tree.root, boot.serial_port)
    enable_services(tree.root)

    if config.packages:
        info("Installing additional packages: " + " ".join(config.packages))
        caps.packages.install(tree.root, config.packages)
    ok(f"Provisioned {attachment.image.path}")
    return boot
