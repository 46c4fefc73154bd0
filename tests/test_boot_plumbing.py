import os

from vmprovision.boot_plumbing import (
    copy_resolv_conf,
    enable_serial_console,
    enable_services,
    initfs_features,
    write_extlinux_conf,
    write_fstab,
    write_initfs_features,
)
from vmprovision.model import BootConfig


def read(path):
    with open(path, "r", encoding="utf-8") as fh:
        return fh.read()


def test_initfs_features_merge_baseline_sorted_and_unique():
    assert initfs_features("ext4", ["virtio", "scsi", "virtio", "base", ""]) == [
        "base", "ext4", "scsi", "virtio",
    ]


def test_write_initfs_features_replaces_existing_line(tmp_path):
    conf = tmp_path / "etc/mkinitfs/mkinitfs.conf"
    conf.parent.mkdir(parents=True)
    conf.write_text('features="ata base cdrom usb"\ndisable_trigger=no\n', encoding="utf-8")

    write_initfs_features(str(tmp_path), "xfs", ["virtio"])

    lines = read(conf).splitlines()
    assert lines[0] == 'features="base virtio xfs"'
    assert "disable_trigger=no" in lines
    assert sum(1 for l in lines if l.startswith("features=")) == 1


def test_write_fstab_single_uuid_entry(tmp_path):
    path = write_fstab(str(tmp_path), "uuid-root", "ext4")

    lines = read(path).splitlines()
    assert len(lines) == 1
    assert lines[0].split() == ["UUID=uuid-root", "/", "ext4", "noatime", "0", "1"]


def test_extlinux_conf_points_at_uuid(tmp_path):
    conf = tmp_path / "etc/update-extlinux.conf"
    conf.parent.mkdir(parents=True)
    conf.write_text(
        "overwrite=1\nroot=/dev/nbd0\ndefault=lts\nmodules=sd-mod\n#serial_port=\n", encoding="utf-8"
    )
    boot = BootConfig(root_uuid="u-1", kernel_flavor="virt", modules=("sd-mod", "usb-storage", "ext4"))

    write_extlinux_conf(str(tmp_path), boot)

    text = read(conf)
    assert "root=UUID=u-1\n" in text
    assert "/dev/nbd0" not in text
    assert "default=virt\n" in text
    assert "modules=sd-mod,usb-storage,ext4\n" in text
    assert 'default_kernel_opts="quiet"\n' in text
    assert "serial_port" not in text.replace("#serial_port=", "")
    assert "overwrite=1" in text


def test_extlinux_conf_serial_settings(tmp_path):
    boot = BootConfig(root_uuid="u-2", kernel_flavor="lts", modules=("sd-mod",), serial_port="ttyS0")

    path = write_extlinux_conf(str(tmp_path), boot)

    text = read(path)
    assert "serial_port=ttyS0\n" in text
    assert 'default_kernel_opts="quiet console=ttyS0,115200"' in text


def test_enable_serial_console_is_idempotent(tmp_path):
    etc = tmp_path / "etc"
    etc.mkdir()
    (etc / "securetty").write_text("console\ntty1\n", encoding="utf-8")
    (etc / "inittab").write_text(
        "tty1::respawn:/sbin/getty 38400 tty1\n#ttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100\n",
        encoding="utf-8",
    )

    enable_serial_console(str(tmp_path), "ttyS0")
    enable_serial_console(str(tmp_path), "ttyS0")

    assert read(etc / "securetty").splitlines().count("ttyS0") == 1
    assert "ttyS0::respawn:/sbin/getty -L ttyS0 115200 vt100" in read(etc / "inittab").splitlines()


def test_enable_services_links_present_scripts_and_skips_missing(tmp_path):
    init_d = tmp_path / "etc/init.d"
    init_d.mkdir(parents=True)
    for name in ("devfs", "dmesg", "mdev", "hwdrivers", "modules", "urandom", "killprocs"):
        (init_d / name).write_text("#!/sbin/openrc-run\n", encoding="utf-8")

    enabled = enable_services(str(tmp_path))

    assert enabled["sysinit"] == ["devfs", "dmesg", "mdev", "hwdrivers"]
    assert "urandom" in enabled["boot"]
    assert "cgroups" not in enabled["sysinit"]
    link = tmp_path / "etc/runlevels/sysinit/devfs"
    assert os.readlink(link) == "/etc/init.d/devfs"
    assert not (tmp_path / "etc/runlevels/sysinit/cgroups").exists()

    # re-running keeps the existing links
    assert enable_services(str(tmp_path)) == enabled


def test_copy_resolv_conf(tmp_path):
    src = tmp_path / "resolv.conf"
    src.write_text("nameserver 10.0.0.1\n", encoding="utf-8")
    root = tmp_path / "root"

    assert copy_resolv_conf(str(root), str(src)) is True
    assert read(root / "etc/resolv.conf") == "nameserver 10.0.0.1\n"
    assert copy_resolv_conf(str(root), str(tmp_path / "absent")) is False
