import os
import re
import shutil

import pytest

from vmprovision import executil, orchestrator, provisioning
from vmprovision.boot_plumbing import write_extlinux_conf
from vmprovision.capabilities import Capabilities
from vmprovision.filesystem import mkfs_command
from vmprovision.model import BlockAttachment, MountTree

FAKE_UUID = "0c4f7a9e-5d0b-4c1e-9a55-3e2f1b7d8c61"
_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3, "T": 1024 ** 4}


class DummyResult:
    def __init__(self, out: str = "", rc: int = 0, err: str = "") -> None:
        self.out = out
        self.rc = rc
        self.err = err


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    log_dir = tmp_path / "logs"
    monkeypatch.setattr(executil, "LOG_DIRS", [str(log_dir)])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return log_dir


@pytest.fixture
def recorder():
    """Collects commands passed to a patched ``run`` and answers from a table."""

    class Recorder:
        def __init__(self):
            self.commands: list[list[str]] = []
            self.responses: dict[tuple, DummyResult] = {}

        def __call__(self, cmd, check=True, **_kwargs):
            cmd = list(cmd)
            self.commands.append(cmd)
            result = self.responses.get(tuple(cmd), DummyResult(""))
            if check and result.rc != 0:
                raise executil.subprocess.CalledProcessError(result.rc, cmd, result.out, result.err)
            return result

    return Recorder()


class FakeImages:
    def __init__(self, host):
        self.host = host

    def exists(self, image):
        return os.path.exists(image.path)

    def create(self, image):
        m = re.match(r"^(\d+)([KMGT]?)$", image.size)
        with open(image.path, "wb") as fh:
            fh.truncate(int(m.group(1)) * _UNITS[m.group(2)])
        self.host.events.append(("create", image.path))


class FakeFilesystems:
    def __init__(self, host):
        self.host = host
        self.on_make = None

    def make(self, device, fstype):
        mkfs_command(device, fstype)
        self.host.events.append(("mkfs", device, fstype))
        if self.on_make:
            self.on_make()

    def uuid(self, device):
        return FAKE_UUID


class FakePackages:
    def __init__(self, host, repo=("linux-lts", "linux-virt")):
        self.host = host
        self.repo = set(repo)
        self.installed: list[tuple[str, ...]] = []

    def install(self, root, packages, *, initdb=False, no_scripts=False):
        self.installed.append(tuple(packages))
        self.host.events.append(("install", tuple(packages)))
        if "alpine-base" in packages:
            init_d = os.path.join(root, "etc/init.d")
            os.makedirs(init_d, exist_ok=True)
            for name in ("devfs", "dmesg", "mdev", "hwdrivers", "modules", "hwclock", "swap",
                         "hostname", "sysctl", "bootmisc", "syslog", "seedrng",
                         "killprocs", "savecache", "mount-ro"):
                open(os.path.join(init_d, name), "w").close()
            with open(os.path.join(root, "etc/inittab"), "w", encoding="utf-8") as fh:
                fh.write("tty1::respawn:/sbin/getty 38400 tty1\n"
                         "#ttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100\n")
            with open(os.path.join(root, "etc/update-extlinux.conf"), "w", encoding="utf-8") as fh:
                fh.write("overwrite=1\n#root=\ndefault_kernel_opts=\"quiet\"\nmodules=sd-mod\n#serial_port=\n")

    def available(self, root, package):
        return package in self.repo


class FakeBootloader:
    def __init__(self, host):
        self.host = host

    def install(self, root, installer):
        self.host.events.append(("bootloader.install", root))

    def configure(self, root, boot):
        write_extlinux_conf(root, boot)
        self.host.events.append(("bootloader.configure", boot.kernel_flavor))


class FakeHost:
    """Stands in for nbd and the mount table; the tree lives in a plain directory."""

    def __init__(self, base):
        self.base = base
        self.events: list[tuple] = []
        self.attached: set[str] = set()
        self.mounted: list[str] = []
        self.snapshot = os.path.join(base, "disk")
        self.mount_dirs: list[str] = []

    def make_mount_dir(self, prefix="vmprovision."):
        path = os.path.join(self.base, f"mnt{len(self.mount_dirs)}")
        os.makedirs(path)
        self.mount_dirs.append(path)
        return path

    def attach(self, image, format=None, on_connect=None):
        device = "/dev/nbd0"
        self.attached.add(device)
        self.events.append(("attach", device, format))
        attachment = BlockAttachment(device=device, image=image, format=format)
        if on_connect:
            on_connect(attachment)
        return attachment

    def detach(self, attachment):
        self.attached.discard(attachment.device)
        self.events.append(("detach", attachment.device))

    def mount_root(self, attachment, fstype, mount_dir):
        self.mounted.append(mount_dir)
        self.events.append(("mount", mount_dir))
        return MountTree(root=mount_dir, fstype=fstype, device=attachment.device)

    def bind_system_dirs(self, tree):
        for name in ("proc", "dev", "sys"):
            target = tree.path(name)
            os.makedirs(target, exist_ok=True)
            tree.submounts.append(target)
            self.mounted.append(target)
        self.events.append(("bind_system_dirs", tree.root))

    def unmount_all(self, tree):
        root = tree.root if isinstance(tree, MountTree) else tree
        if root not in self.mounted:
            return
        self.mounted = [m for m in self.mounted if not (m == root or m.startswith(root + "/"))]
        shutil.copytree(root, self.snapshot, symlinks=True, dirs_exist_ok=True)
        shutil.rmtree(root)
        os.mkdir(root)
        self.events.append(("unmount_all", root))

    def capabilities(self):
        self.images = FakeImages(self)
        self.filesystems = FakeFilesystems(self)
        self.packages = FakePackages(self)
        self.bootloader = FakeBootloader(self)
        return Capabilities(self.images, self.filesystems, self.packages, self.bootloader)


@pytest.fixture
def fake_host(tmp_path, monkeypatch):
    host = FakeHost(str(tmp_path / "host"))
    os.makedirs(host.base)
    monkeypatch.setattr(orchestrator, "make_mount_dir", host.make_mount_dir)
    monkeypatch.setattr(orchestrator.nbd, "attach", host.attach)
    monkeypatch.setattr(orchestrator.nbd, "detach", host.detach)
    monkeypatch.setattr(orchestrator, "mount_root", host.mount_root)
    monkeypatch.setattr(orchestrator, "unmount_all", host.unmount_all)
    monkeypatch.setattr(provisioning, "bind_system_dirs", host.bind_system_dirs)
    monkeypatch.setattr(provisioning, "copy_resolv_conf", lambda mnt: False)
    return host
