"""Disk image files backed by ``qemu-img``."""

from __future__ import annotations

import os
import re
from subprocess import CalledProcessError

from .errors import AttachError, ConfigurationError
from .executil import failure_message, run, trace
from .model import ImageTarget

IMAGE_FORMATS = ("raw", "qcow2", "qed", "vdi", "vmdk", "vpc")
_SIZE_RE = re.compile(r"^[1-9][0-9]*[KMGT]?$")


def validate(image: ImageTarget) -> None:
    if image.format not in IMAGE_FORMATS:
        raise ConfigurationError(
            f"unsupported image format {image.format!r}; expected one of {', '.join(IMAGE_FORMATS)}"
        )
    if not _SIZE_RE.match(image.size or ""):
        raise ConfigurationError(f"invalid image size {image.size!r}; expected e.g. 800M or 2G")


class QemuImageProvider:
    def exists(self, image: ImageTarget) -> bool:
        return os.path.isfile(image.path)

    def create(self, image: ImageTarget) -> None:
        validate(image)
        try:
            run(["qemu-img", "create", "-f", image.format, image.path, image.size], check=True)
        except CalledProcessError as exc:
            raise AttachError(
                f"qemu-img create failed for {image.path}: {failure_message(exc)}",
                state={"image": image.path, "format": image.format, "size": image.size},
            ) from exc
        trace("image.created", path=image.path, format=image.format, size=image.size)
