"""CLI entrypoint for the VM image provisioner."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
import time
from typing import Any, Dict, Optional

from .capabilities import Capabilities, default_capabilities
from .errors import ConfigurationError
from .executil import append_jsonl, fail, ok, resolve_log_path, set_log_dir, trace, warn
from .filesystem import SUPPORTED_FILESYSTEMS
from .image import validate as validate_image
from .model import Flags, HookSpec, ImageTarget, RootfsConfig
from .orchestrator import Outcome, RunContext, execute, failures_payload, required_host_tools

RESULT_CODES: Dict[str, int] = {
    "BUILD_OK": 0,
    "FAIL_UNHANDLED": 1,
    "FAIL_CONFIG": 2,
    "FAIL_DEVICE": 3,
    "FAIL_ATTACH": 4,
    "FAIL_MKFS": 5,
    "FAIL_MOUNT": 6,
    "FAIL_PACKAGES": 7,
    "FAIL_BOOT": 8,
    "FAIL_SCRIPT": 9,
    "FAIL_CLEANUP": 10,
    "FAIL_INTERRUPTED": 130,
}

ENV_PREFIX = "VMPROVISION_"
_TRUE = {"1", "yes", "true", "on"}
_FALSE = {"0", "no", "false", "off", ""}
CLI_START_MONO = time.perf_counter()


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _split_list(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(p for p in re.split(r"[\s,]+", value.strip()) if p)


def build_parser() -> argparse.ArgumentParser:
    """Argument parser whose defaults come from ``VMPROVISION_*`` variables."""

    parser = argparse.ArgumentParser(
        prog="vmprovision",
        description="Create or update a bootable Alpine Linux VM disk image.",
    )
    parser.add_argument("image", help="path of the disk image to create or reuse")
    parser.add_argument("script", nargs="?", default=_env("SCRIPT"),
                        help="optional customization script run against the new root")
    parser.add_argument("script_args", nargs="*", help="arguments passed to the script")
    parser.add_argument("--branch", default=_env("BRANCH", "latest-stable"))
    parser.add_argument("--mirror-uri", default=_env("MIRROR_URI", "https://dl-cdn.alpinelinux.org/alpine"))
    parser.add_argument("--image-format", default=_env("IMAGE_FORMAT", "qcow2"))
    parser.add_argument("--image-size", default=_env("IMAGE_SIZE", "2G"))
    parser.add_argument("--fs-type", default=_env("FS_TYPE", "ext4"),
                        help="one of: " + ", ".join(SUPPORTED_FILESYSTEMS))
    parser.add_argument("--kernel-flavor", default=_env("KERNEL_FLAVOR", "virt"))
    parser.add_argument("--initfs-features", default=_env("INITFS_FEATURES", "ata ide scsi virtio"))
    parser.add_argument("--keys-dir", default=_env("KEYS_DIR"))
    parser.add_argument("--repositories-file", default=_env("REPOSITORIES_FILE"))
    parser.add_argument("--packages", default=_env("PACKAGES", ""))
    parser.add_argument("--serial-console", action=argparse.BooleanOptionalAction,
                        default=_env_bool("SERIAL_CONSOLE"))
    parser.add_argument("--script-chroot", action=argparse.BooleanOptionalAction,
                        default=_env_bool("SCRIPT_CHROOT"))
    parser.add_argument("--cleanup", action=argparse.BooleanOptionalAction,
                        default=not _env_bool("NO_CLEANUP"),
                        help="release mounts and the nbd device when done (default)")
    parser.add_argument("--log-dir", default=_env("LOG_DIR"))
    return parser


def _require_path(path: Optional[str], kind: str, check) -> Optional[str]:
    if not path:
        return None
    if not check(path):
        raise ConfigurationError(f"{kind} {path!r} does not exist", state={kind: path})
    return path


def resolve_config(args: argparse.Namespace) -> tuple[ImageTarget, RootfsConfig, Optional[HookSpec], Flags]:
    image = ImageTarget(path=args.image, size=args.image_size, format=args.image_format)
    validate_image(image)

    config = RootfsConfig(
        fstype=args.fs_type,
        branch=args.branch,
        mirror_uri=args.mirror_uri,
        repositories_file=_require_path(args.repositories_file, "repositories_file", os.path.isfile),
        keys_dir=_require_path(args.keys_dir, "keys_dir", os.path.isdir),
        packages=_split_list(args.packages),
        kernel_flavor=args.kernel_flavor,
        initfs_features=_split_list(args.initfs_features),
        serial_console=bool(args.serial_console),
        script_chroot=bool(args.script_chroot),
    )

    hook = None
    if args.script:
        if not os.path.isfile(args.script):
            raise ConfigurationError(f"script {args.script!r} does not exist")
        if not os.access(args.script, os.X_OK):
            raise ConfigurationError(f"script {args.script!r} is not executable")
        hook = HookSpec(script=args.script, args=tuple(args.script_args), chroot=config.script_chroot)
    elif args.script_args:
        raise ConfigurationError("script arguments given without a script")

    return image, config, hook, Flags(no_cleanup=not args.cleanup)


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _print_remedies(outcome: Outcome) -> None:
    for failure in outcome.cleanup_failures:
        if failure.remedy:
            warn(f"{failure.label} is still held; release it manually with: {failure.remedy}")
        else:
            warn(f"{failure.label} could not be released: {failure.error}")


def _outcome_result(outcome: Outcome, image: ImageTarget) -> tuple[str, Dict[str, Any]]:
    extra: Dict[str, Any] = {"image": image.path}
    if outcome.cleanup_failures:
        extra["cleanup_failures"] = failures_payload(outcome.cleanup_failures)
    if outcome.left_behind:
        extra["left_behind"] = [r.label for r in outcome.left_behind]
    if outcome.error is not None:
        err = outcome.error
        fail(f"FATAL: {err.operation}: {err}")
        _print_remedies(outcome)
        extra.update({"why": str(err), "operation": err.operation, "state": err.state})
        return err.result, extra
    if outcome.cleanup_failures:
        fail("FATAL: cleanup: some resources could not be released")
        _print_remedies(outcome)
        return "FAIL_CLEANUP", extra
    ok(f"Image {image.path} is ready")
    return "BUILD_OK", extra


def _main_impl(argv: Optional[list[str]] = None, caps: Optional[Capabilities] = None,
               check_root: bool = True) -> int:
    try:
        args = build_parser().parse_args(argv)
        if args.log_dir:
            set_log_dir(args.log_dir)
        image, config, hook, flags = resolve_config(args)
        if check_root and os.geteuid() != 0:
            raise ConfigurationError("vmprovision must be run as root")
    except ConfigurationError as exc:
        fail(f"FATAL: {exc.operation}: {exc}")
        _emit_result("FAIL_CONFIG", extra={"why": str(exc)})

    trace("cli.config", image=image.path, format=image.format, size=image.size,
          fstype=config.fstype, flavor=config.kernel_flavor, hook=bool(hook))
    ctx = RunContext(
        image=image,
        config=config,
        caps=caps or default_capabilities(),
        hook=hook,
        flags=flags,
        host_tools=required_host_tools(config) if caps is None else (),
    )
    outcome = execute(ctx)
    if outcome.left_behind:
        warn("cleanup suppressed; release the resources above when finished")
    kind, extra = _outcome_result(outcome, image)
    _emit_result(kind, extra)
    return RESULT_CODES[kind]


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        fail(f"FATAL: unhandled error: {exc}")
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 1


if __name__ == "__main__":
    sys.exit(main())
