"""Repository list and trust keys written into the tree before any install."""

from __future__ import annotations

import base64
import binascii
import glob
import os
import platform
import shutil
from typing import Mapping

from .errors import ConfigurationError, PackageInstallError
from .executil import trace
from .model import RootfsConfig

REPOSITORIES = "etc/apk/repositories"
KEYS_DIR = "etc/apk/keys"
HOST_KEY_DIRS = ("/usr/share/apk/keys/{arch}", "/etc/apk/keys")

# Base64-encoded public keys (file name -> body) shipped with a build, if any.
EMBEDDED_KEYS: dict[str, str] = {}


def default_repositories(mirror_uri: str, branch: str) -> list[str]:
    mirror = mirror_uri.rstrip("/")
    return [f"{mirror}/{branch}/main", f"{mirror}/{branch}/community"]


def write_repositories(root: str, config: RootfsConfig) -> str:
    dst = os.path.join(root, REPOSITORIES)
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    if config.repositories_file and os.path.isfile(config.repositories_file):
        shutil.copyfile(config.repositories_file, dst)
        trace("repositories.copied", src=config.repositories_file, dst=dst)
        return dst
    lines = default_repositories(config.mirror_uri, config.branch)
    with open(dst, "w", encoding="utf-8") as fh:
        fh.write("\n".join(lines) + "\n")
    trace("repositories.default", dst=dst, repositories=lines)
    return dst


def decode_keys(root: str, keys: Mapping[str, str]) -> list[str]:
    dst_dir = os.path.join(root, KEYS_DIR)
    os.makedirs(dst_dir, exist_ok=True)
    written = []
    for name, body in sorted(keys.items()):
        try:
            data = base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(f"embedded key {name} is not valid base64") from exc
        path = os.path.join(dst_dir, os.path.basename(name))
        with open(path, "wb") as fh:
            fh.write(data)
        written.append(path)
    return written


def _copy_key_dir(src: str, dst_dir: str) -> list[str]:
    written = []
    for key in sorted(glob.glob(os.path.join(src, "*.pub"))):
        dst = os.path.join(dst_dir, os.path.basename(key))
        shutil.copyfile(key, dst)
        written.append(dst)
    return written


def host_key_dirs(arch: str | None = None) -> list[str]:
    arch = arch or platform.machine()
    return [d.format(arch=arch) for d in HOST_KEY_DIRS]


def write_keys(root: str, config: RootfsConfig, embedded: Mapping[str, str] | None = None,
               host_dirs: list[str] | None = None) -> list[str]:
    """Populate ``etc/apk/keys`` in the tree.

    A caller-supplied key directory is copied verbatim. Otherwise the embedded
    keys are decoded and the host's apk key store is copied alongside.
    """

    dst_dir = os.path.join(root, KEYS_DIR)
    os.makedirs(dst_dir, exist_ok=True)
    if config.keys_dir and os.path.isdir(config.keys_dir):
        written = _copy_key_dir(config.keys_dir, dst_dir)
        trace("repositories.keys_copied", src=config.keys_dir, count=len(written))
    else:
        written = decode_keys(root, EMBEDDED_KEYS if embedded is None else embedded)
        for src in host_key_dirs() if host_dirs is None else host_dirs:
            if os.path.isdir(src):
                written += _copy_key_dir(src, dst_dir)
                break
        trace("repositories.keys_default", count=len(written))
    if not written:
        raise PackageInstallError(
            "no trust keys available; pass --keys-dir", state={"keys_dir": dst_dir}
        )
    return written
