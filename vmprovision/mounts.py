"""Root mount, system bind mounts and deepest-first unmount sweep."""
from subprocess import CalledProcessError
import contextlib
import os
import tempfile

from .errors import MountError, UnmountError
from .executil import failure_message, run, trace, udev_settle
from .model import BlockAttachment, MountTree

MOUNTINFO = "/proc/self/mountinfo"
SYSTEM_DIRS = ("proc", "dev", "sys")


def _unescape(field: str) -> str:
    # mountinfo octal-escapes space, tab, newline and backslash
    for code, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(code, char)
    return field


def _mount(source: str, target: str, fstype: str | None = None, opts: list[str] | None = None,
           extra: list[str] | None = None) -> None:
    os.makedirs(target, exist_ok=True)
    cmd = ["mount"]
    if fstype:
        cmd += ["-t", fstype]
    if opts:
        cmd += ["-o", ",".join(opts)]
    if extra:
        cmd += extra
    cmd += [source, target]
    try:
        run(cmd, check=True)
    except CalledProcessError as exc:
        raise MountError(
            f"failed to mount {source} at {target}: {failure_message(exc)}",
            state={"source": source, "target": target, "fstype": fstype},
        ) from exc


def _make_private(target: str) -> None:
    try:
        run(["mount", "--make-private", target], check=True)
    except CalledProcessError as exc:
        raise MountError(
            f"failed to make {target} private: {failure_message(exc)}",
            state={"target": target},
        ) from exc


def make_mount_dir(prefix: str = "vmprovision.") -> str:
    return tempfile.mkdtemp(prefix=prefix)


def mount_root(attachment: BlockAttachment, fstype: str, mount_dir: str) -> MountTree:
    """Mount the formatted device at ``mount_dir`` (a fresh temporary directory)."""

    _mount(attachment.device, mount_dir, fstype=fstype)
    trace("mounts.root", device=attachment.device, target=mount_dir, fstype=fstype)
    return MountTree(root=mount_dir, fstype=fstype, device=attachment.device)


def bind_system_dirs(tree: MountTree) -> None:
    """Bind host /dev and /sys and mount a fresh proc, all with private propagation."""

    for name in SYSTEM_DIRS:
        target = tree.path(name)
        if name == "proc":
            _mount("none", target, fstype="proc")
        else:
            _mount(f"/{name}", target, extra=["--bind"])
        tree.submounts.append(target)
        _make_private(target)
    trace("mounts.system_dirs", root=tree.root, submounts=list(tree.submounts))


def bind_dir(tree: MountTree, source: str, rel_target: str) -> str:
    target = tree.path(rel_target)
    _mount(source, target, extra=["--bind"])
    tree.submounts.append(target)
    _make_private(target)
    trace("mounts.bind", source=source, target=target)
    return target


def list_mounts_under(root: str, mountinfo: str = MOUNTINFO) -> list[str]:
    """Return mount points equal to or below ``root``, deepest path first."""

    root = os.path.normpath(root)
    found: list[str] = []
    try:
        with open(mountinfo, "r", encoding="utf-8") as fh:
            for line in fh:
                parts = line.split()
                if len(parts) < 5:
                    continue
                point = os.path.normpath(_unescape(parts[4]))
                if point == root or point.startswith(root + os.sep):
                    found.append(point)
    except FileNotFoundError:
        return []
    return sorted(found, key=len, reverse=True)


def unmount_path(path: str) -> None:
    try:
        run(["umount", "-fl", path], check=True)
    except CalledProcessError as exc:
        raise UnmountError(
            f"failed to unmount {path}: {failure_message(exc)}", failed=[path]
        ) from exc


def unmount_all(tree: MountTree | str, mountinfo: str = MOUNTINFO) -> None:
    """Unmount every mount under the tree root, children before parents.

    A failing unmount does not stop the sweep; failures are collected and
    raised together afterwards. Calling this on an already released tree is
    a no-op.
    """

    root = tree.root if isinstance(tree, MountTree) else tree
    failed: list[str] = []
    with contextlib.suppress(OSError):
        os.sync()
    for path in list_mounts_under(root, mountinfo):
        try:
            unmount_path(path)
        except UnmountError as exc:
            trace("mounts.umount_failed", path=path, error=str(exc))
            failed.append(path)
    udev_settle()
    if failed:
        raise UnmountError(
            "failed to unmount: " + ", ".join(failed),
            failed=failed,
            state={"root": root},
        )
    trace("mounts.released", root=root)
