"""Run the caller's customization script against the provisioned root."""

from __future__ import annotations

import os
from subprocess import CalledProcessError
from typing import Callable, Optional

from .errors import ScriptError
from .executil import info, run, trace
from .model import HookSpec, MountTree
from .mounts import bind_dir, unmount_path

CHROOT_BIND = "mnt"
ROOT_ENV = "VMPROVISION_ROOT"


def _chroot_command(tree: MountTree, script_name: str, args: tuple[str, ...]) -> list[str]:
    return [
        "chroot", tree.root, "/bin/sh", "-c",
        f'cd /{CHROOT_BIND} && exec ./"$0" "$@"',
        script_name, *args,
    ]


def run_hook(hook: HookSpec, tree: MountTree,
             register: Optional[Callable[[str, Callable[[], None], str], None]] = None) -> None:
    """Execute ``hook``; any nonzero exit raises :class:`ScriptError`.

    In chroot mode the script's directory is bound at ``/mnt`` inside the
    tree and its release handed to ``register`` so teardown unmounts it
    first.
    """

    script = os.path.abspath(hook.script)
    script_name = os.path.basename(script)
    if hook.chroot:
        target = bind_dir(tree, os.path.dirname(script), CHROOT_BIND)
        if register:
            register(f"hook bind {target}", lambda: unmount_path(target), f"umount -l {target}")
        cmd = _chroot_command(tree, script_name, hook.args)
        env = None
        cwd = None
        info(f"Executing script in chroot: {script_name} {' '.join(hook.args)}".rstrip())
    else:
        cmd = [script, *hook.args]
        env = dict(os.environ, **{ROOT_ENV: tree.root})
        cwd = tree.root
        info(f"Executing script: {script_name} {' '.join(hook.args)}".rstrip())
    try:
        run(cmd, check=True, env=env, cwd=cwd, capture=False)
    except CalledProcessError as exc:
        raise ScriptError(
            f"script {script_name} exited with status {exc.returncode}",
            returncode=exc.returncode,
            state={"script": script, "args": list(hook.args), "chroot": hook.chroot},
        ) from exc
    trace("hook.done", script=script, chroot=hook.chroot)
