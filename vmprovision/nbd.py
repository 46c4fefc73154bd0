"""Network block device slots for exposing an image file as a block device."""

from __future__ import annotations

import glob
import os
import re
from subprocess import CalledProcessError
from typing import Callable

from .errors import AttachError, DetachError, DeviceUnavailable
from .executil import failure_message, run, trace, udev_settle
from .model import BlockAttachment, ImageTarget

SYS_BLOCK = "/sys/block"


def _slot_index(path: str) -> int:
    m = re.search(r"(\d+)$", path)
    return int(m.group(1)) if m else -1


def _reported_size(slot_dir: str) -> str | None:
    try:
        with open(os.path.join(slot_dir, "size"), "r", encoding="utf-8") as fh:
            return fh.read().strip()
    except OSError as exc:
        trace("nbd.size_unreadable", slot=slot_dir, error=str(exc))
        return None


def _scan(sys_block: str) -> str | None:
    slots = sorted(glob.glob(os.path.join(sys_block, "nbd*")), key=_slot_index)
    for slot in slots:
        size = _reported_size(slot)
        trace("nbd.scan", slot=os.path.basename(slot), size=size)
        if size == "0":
            return "/dev/" + os.path.basename(slot)
    return None


def load_module() -> None:
    run(["modprobe", "nbd", "max_part=0"], check=False)
    udev_settle()


def find_free_slot(sys_block: str = SYS_BLOCK) -> str:
    """Return the first nbd device whose reported size is zero.

    When no slot is free the ``nbd`` kernel module is loaded and the pool is
    scanned once more.
    """

    device = _scan(sys_block)
    if device:
        return device
    trace("nbd.no_free_slot", retry="modprobe")
    load_module()
    device = _scan(sys_block)
    if device:
        return device
    raise DeviceUnavailable(
        "no free nbd device found; is the nbd kernel module available?",
        state={"sys_block": sys_block},
    )


def attach(image: ImageTarget, format: str | None = None, sys_block: str = SYS_BLOCK,
           on_connect: Callable[[BlockAttachment], None] | None = None) -> BlockAttachment:
    """Connect ``image`` to the first free nbd slot.

    ``on_connect`` is called with the attachment as soon as the device is
    connected, before waiting for udev, so a release can be scheduled
    ahead of any further blocking call.
    """

    device = find_free_slot(sys_block)
    cmd = ["qemu-nbd", "--connect=" + device, "--cache=writeback"]
    if format:
        cmd.append("--format=" + format)
    cmd.append(image.path)
    try:
        run(cmd, check=True)
    except CalledProcessError as exc:
        raise AttachError(
            f"failed to connect {image.path} to {device}: {failure_message(exc)}",
            state={"device": device, "image": image.path, "format": format},
        ) from exc
    attachment = BlockAttachment(device=device, image=image, format=format)
    trace("nbd.attached", device=device, image=image.path, format=format)
    if on_connect is not None:
        on_connect(attachment)
    udev_settle()
    return attachment


def detach(attachment: BlockAttachment) -> None:
    """Disconnect ``attachment``.

    Not retried: a failed disconnect almost always means something still
    holds the device open.
    """

    try:
        run(["qemu-nbd", "--disconnect", attachment.device], check=True)
    except CalledProcessError as exc:
        raise DetachError(
            f"failed to disconnect {attachment.device}: {failure_message(exc)}",
            state={"device": attachment.device, "image": attachment.image.path},
        ) from exc
    trace("nbd.detached", device=attachment.device)
