import pytest

from vmprovision import errors, provisioning
from vmprovision.model import BlockAttachment, ImageTarget, MountTree, RootfsConfig

from conftest import FAKE_UUID, FakePackages


@pytest.mark.parametrize(
    "requested,repo,expected",
    [
        ("virt", {"linux-lts", "linux-virt"}, "lts"),
        ("virt", {"linux-virt", "linux-vanilla"}, "vanilla"),
        ("virt", set(), "vanilla"),
        ("lts", {"linux-virt"}, "lts"),
        ("edge", set(), "edge"),
    ],
)
def test_select_kernel_flavor(requested, repo, expected):
    installer = FakePackages(None, repo=repo)
    assert provisioning.select_kernel_flavor(requested, "/r", installer) == expected


def test_boot_config_modules_and_serial():
    config = RootfsConfig(fstype="btrfs", serial_console=True)
    boot = provisioning.boot_config("u", "lts", config)
    assert boot.modules == ("sd-mod", "usb-storage", "btrfs")
    assert boot.serial_port == "ttyS0"
    assert provisioning.boot_config("u", "lts", RootfsConfig()).serial_port is None


def test_provision_runs_stages_in_order(tmp_path, fake_host):
    keys = tmp_path / "keys"
    keys.mkdir()
    (keys / "k.rsa.pub").write_text("K", encoding="utf-8")
    root = tmp_path / "root"
    root.mkdir()
    tree = MountTree(root=str(root), fstype="ext4", device="/dev/nbd0")
    att = BlockAttachment(device="/dev/nbd0", image=ImageTarget(path=str(tmp_path / "img")))
    caps = fake_host.capabilities()
    config = RootfsConfig(keys_dir=str(keys), packages=("openssh", "chrony"))

    boot = provisioning.provision(att, tree, FAKE_UUID, config, caps)

    kinds = [e[0] if e[0] != "install" else e[1] for e in fake_host.events]
    assert kinds == [
        ("alpine-base",),
        "bind_system_dirs",
        ("linux-lts",),
        "bootloader.install",
        "bootloader.configure",
        ("openssh", "chrony"),
    ]
    assert boot.kernel_flavor == "lts"
    assert (root / "etc/apk/keys/k.rsa.pub").exists()
    assert (root / "etc/fstab").read_text(encoding="utf-8").startswith(f"UUID={FAKE_UUID}\t/\text4")
    assert (root / "etc/mkinitfs/mkinitfs.conf").read_text().startswith('features="ata base ext4 ide scsi virtio"')


def test_package_failure_stops_pipeline(tmp_path, fake_host):
    keys = tmp_path / "keys"
    keys.mkdir()
    (keys / "k.rsa.pub").write_text("K", encoding="utf-8")
    root = tmp_path / "root"
    root.mkdir()
    caps = fake_host.capabilities()

    def broken(root, packages, **_kwargs):
        raise errors.PackageInstallError("apk add alpine-base failed")

    caps.packages.install = broken
    tree = MountTree(root=str(root), fstype="ext4", device="/dev/nbd0")
    att = BlockAttachment(device="/dev/nbd0", image=ImageTarget(path="/img"))

    with pytest.raises(errors.PackageInstallError):
        provisioning.provision(att, tree, FAKE_UUID, RootfsConfig(keys_dir=str(keys)), caps)

    assert not (root / "etc/fstab").exists()
    assert "bind_system_dirs" not in [e[0] for e in fake_host.events]
