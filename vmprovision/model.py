from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class ImageTarget:
    path: str
    size: str = "2G"
    format: str = "qcow2"


@dataclass(frozen=True)
class BlockAttachment:
    device: str
    image: ImageTarget
    format: Optional[str] = None


@dataclass
class MountTree:
    root: str
    fstype: str
    device: str
    submounts: list = field(default_factory=list)

    def path(self, *parts: str) -> str:
        return "/".join([self.root.rstrip("/"), *(p.strip("/") for p in parts)])


@dataclass(frozen=True)
class RootfsConfig:
    fstype: str = "ext4"
    branch: str = "latest-stable"
    mirror_uri: str = "https://dl-cdn.alpinelinux.org/alpine"
    repositories_file: Optional[str] = None
    keys_dir: Optional[str] = None
    packages: Tuple[str, ...] = ()
    kernel_flavor: str = "virt"
    initfs_features: Tuple[str, ...] = ("ata", "ide", "scsi", "virtio")
    serial_console: bool = False
    script_chroot: bool = False


@dataclass(frozen=True)
class BootConfig:
    root_uuid: str
    kernel_flavor: str
    modules: Tuple[str, ...]
    serial_port: Optional[str] = None
    kernel_opts: Tuple[str, ...] = ("quiet",)


@dataclass(frozen=True)
class HookSpec:
    script: str
    args: Tuple[str, ...] = ()
    chroot: bool = False


@dataclass(frozen=True)
class Flags:
    no_cleanup: bool = False
