from __future__ import annotations

"""Subprocess wrapper, JSONL trace log and operator console lines."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import sys
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "vmprovision.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/vmprovision",
        "/tmp/vmprovision-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def set_log_dir(path: str) -> None:
    global LOG_DIRS, LOG_PATH
    LOG_DIRS = [path]
    LOG_PATH = None


def _now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _write_jsonl(obj: dict) -> None:
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def _log_event(kind: str, cmd: list[str], rc: int | None = None, out: str | None = None,
               err: str | None = None, dur: float | None = None) -> None:
    _write_jsonl({"ts": _now(), "kind": kind, "cmd": cmd, "rc": rc, "dur": dur, "out": out, "err": err})


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("VMPROVISION_LOG_LEVEL", "TRACE").upper()


def log(level: str, event: str, **fields) -> None:
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 100)
    if lvl < cur:
        return
    rec = {"ts": _now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields) -> None:
    log("TRACE", event, **fields)


# Operator-facing console lines; stdout is reserved for the result payload.
def _emit(prefix: str, msg: str) -> None:
    print(f"{prefix} {msg}", file=sys.stderr, flush=True)


def info(msg: str) -> None:
    _emit("[INFO]", msg)
    log("INFO", "console", msg=msg)


def ok(msg: str) -> None:
    _emit("[OK]", msg)
    log("INFO", "console", msg=msg)


def warn(msg: str) -> None:
    _emit("[WARN]", msg)
    log("WARN", "console", msg=msg)


def fail(msg: str) -> None:
    _emit("[FAIL]", msg)
    log("ERROR", "console", msg=msg)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = None,
    env: dict | None = None,
    cwd: str | None = None,
    capture: bool = True,
) -> Result:
    """Run ``cmd`` to completion and return its :class:`Result`.

    No timeout is applied unless the caller asks for one. With
    ``capture=False`` the child writes straight to the operator's terminal,
    which is what long package installs and hook scripts want.
    """

    trace("exec.start", cmd=list(cmd), cwd=cwd)
    started = time.time()
    try:
        proc = subprocess.run(
            list(cmd),
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
    except OSError as exc:
        # the binary could not be started; report it like a shell would
        dur = time.time() - started
        trace("exec.not_started", cmd=list(cmd), error=str(exc))
        _log_event("done", list(cmd), rc=127, out="", err=str(exc), dur=dur)
        if check:
            raise subprocess.CalledProcessError(127, list(cmd), "", str(exc)) from exc
        return Result(127, "", str(exc), dur)
    dur = time.time() - started
    out = proc.stdout if capture else ""
    err = proc.stderr if capture else ""
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    _log_event("done", list(cmd), rc=proc.returncode, out=out, err=err, dur=dur)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), out, err)
    return Result(proc.returncode, out or "", err or "", dur)


def describe(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(c) for c in cmd)


def failure_message(exc: subprocess.CalledProcessError) -> str:
    msg = (exc.stderr or exc.stdout or "").strip()
    return msg or f"exit status {exc.returncode}"


def udev_settle() -> None:
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def append_jsonl(path: str, obj: dict) -> None:
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
