"""Attach -> format -> mount -> provision -> hook -> teardown for one image."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from . import nbd
from .apk import HOST_VIRTUAL_PACKAGE, install_host_packages, remove_host_packages
from .capabilities import Capabilities
from .errors import ProvisionError
from .executil import info, trace, warn
from .filesystem import SUPPORTED_FILESYSTEMS
from .hook import run_hook
from .model import BlockAttachment, BootConfig, Flags, HookSpec, ImageTarget, MountTree, RootfsConfig
from .mounts import make_mount_dir, mount_root, unmount_all
from .provisioning import make_filesystem, provision
from .teardown import Release, StepFailure, TeardownController


@dataclass
class RunContext:
    image: ImageTarget
    config: RootfsConfig
    caps: Capabilities
    hook: Optional[HookSpec] = None
    flags: Flags = field(default_factory=Flags)
    host_tools: tuple = ()
    teardown: TeardownController = field(default_factory=TeardownController)
    mount_dir: Optional[str] = None
    attachment: Optional[BlockAttachment] = None
    tree: Optional[MountTree] = None
    root_uuid: Optional[str] = None
    boot: Optional[BootConfig] = None


@dataclass
class Outcome:
    error: Optional[ProvisionError] = None
    cleanup_failures: list = field(default_factory=list)
    left_behind: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cleanup_failures


def required_host_tools(config: RootfsConfig) -> tuple:
    tools = ["qemu-img", "qemu-nbd", "blkid", "apk", "chroot"]
    # an unknown filesystem is reported by the filesystem maker, not here
    if config.fstype in SUPPORTED_FILESYSTEMS:
        tools.append(f"mkfs.{config.fstype}")
    return tuple(tools)


def _acquire_host_tools(ctx: RunContext) -> None:
    if ctx.host_tools and install_host_packages(ctx.host_tools):
        ctx.teardown.register(
            f"host package set {HOST_VIRTUAL_PACKAGE}",
            remove_host_packages,
            f"apk del {HOST_VIRTUAL_PACKAGE}",
        )


def _acquire_mount_dir(ctx: RunContext) -> str:
    mount_dir = make_mount_dir()
    ctx.mount_dir = mount_dir
    ctx.teardown.register(f"temporary directory {mount_dir}", lambda: os.rmdir(mount_dir),
                          f"umount -R -l {mount_dir} && rmdir {mount_dir}")
    return mount_dir


def _acquire_attachment(ctx: RunContext) -> BlockAttachment:
    def connected(attachment: BlockAttachment) -> None:
        ctx.attachment = attachment
        ctx.teardown.register(f"nbd device {attachment.device}", lambda: nbd.detach(attachment),
                              f"qemu-nbd --disconnect {attachment.device}")

    return nbd.attach(ctx.image, ctx.image.format, on_connect=connected)


def _acquire_tree(ctx: RunContext, attachment: BlockAttachment, mount_dir: str) -> MountTree:
    tree = mount_root(attachment, ctx.config.fstype, mount_dir)
    ctx.tree = tree
    ctx.teardown.register(f"mount tree {tree.root}", lambda: unmount_all(tree),
                          f"umount -R -l {tree.root}")
    return tree


def build(ctx: RunContext) -> BootConfig:
    _acquire_host_tools(ctx)
    if ctx.caps.images.exists(ctx.image):
        info(f"Reusing existing image {ctx.image.path}")
    else:
        info(f"Creating {ctx.image.format} image {ctx.image.path} ({ctx.image.size})")
        ctx.caps.images.create(ctx.image)

    mount_dir = _acquire_mount_dir(ctx)
    attachment = _acquire_attachment(ctx)
    ctx.root_uuid = make_filesystem(attachment, ctx.config, ctx.caps)
    tree = _acquire_tree(ctx, attachment, mount_dir)

    ctx.boot = provision(attachment, tree, ctx.root_uuid, ctx.config, ctx.caps)
    if ctx.hook:
        run_hook(ctx.hook, tree, register=ctx.teardown.register)
    return ctx.boot


def _report_left_behind(left: list[Release]) -> None:
    for release in left:
        warn(f"left in place: {release.label}" + (f" (release with: {release.remedy})" if release.remedy else ""))


def execute(ctx: RunContext) -> Outcome:
    """Run the whole pipeline; teardown runs on every exit path."""

    outcome = Outcome()
    ctx.teardown.arm()
    try:
        build(ctx)
    except ProvisionError as exc:
        outcome.error = exc
        trace("orchestrator.failed", kind=type(exc).__name__, error=str(exc), state=exc.state)
    except Exception as exc:  # noqa: BLE001 - still release and report
        outcome.error = ProvisionError(
            f"{type(exc).__name__}: {exc}", state={"exception": type(exc).__name__}
        )
        outcome.error.__cause__ = exc
        trace("orchestrator.unhandled", kind=type(exc).__name__, error=str(exc))
    finally:
        ctx.teardown.disarm()
        if ctx.flags.no_cleanup:
            outcome.left_behind = ctx.teardown.abandon()
            _report_left_behind(outcome.left_behind)
        else:
            outcome.cleanup_failures = ctx.teardown.unwind()
    return outcome


def failures_payload(failures: list[StepFailure]) -> list[dict]:
    return [{"resource": f.label, "error": f.error, "remedy": f.remedy} for f in failures]
