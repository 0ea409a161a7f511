"""CLI entrypoint: format and unlock LUKS devices with KMS-wrapped passphrases."""

from __future__ import annotations

import argparse
import os
import socket
import subprocess
import sys
import time
from importlib import metadata
from typing import Any, Dict, Optional

from . import keystore
from .config import load_config
from .errors import (
    AuthorityError,
    AwsKmsLuksError,
    ConfigError,
    FormatError,
    KeyNotFoundError,
    KeyParseError,
    KeyStoreError,
    StoreError,
    UnlockError,
    UUIDBindingError,
)
from .executil import append_jsonl, info, resolve_log_path
from .kms import KeyAuthority, new_data_key
from .luks import check_formattable, format_device, unlock_all
from .model import BuildInfo
from .paths import DEV_BY_UUID, key_store_dir

PROG = "awskmsluks"

RESULT_CODES: Dict[str, int] = {
    "FORMAT_OK": 0,
    "OPEN_OK": 0,
    "UUID_OK": 0,
    "RESTORE_OK": 0,
    "VERSION_OK": 0,
    "FAIL_USAGE": 1,
    "FAIL_CONFIG": 2,
    "FAIL_AUTHORITY": 3,
    "FAIL_STORE": 4,
    "FAIL_KEY_LOOKUP": 5,
    "FAIL_FORMAT": 6,
    "FAIL_UUID_BINDING": 7,
    "FAIL_UNLOCK": 8,
    "FAIL_GENERIC": 9,
    "FAIL_UNHANDLED": 12,
}

# Checked in order; subclasses before their bases.
_ERROR_KINDS = (
    (ConfigError, "FAIL_CONFIG"),
    (AuthorityError, "FAIL_AUTHORITY"),
    (StoreError, "FAIL_STORE"),
    (KeyNotFoundError, "FAIL_KEY_LOOKUP"),
    (KeyParseError, "FAIL_KEY_LOOKUP"),
    (KeyStoreError, "FAIL_STORE"),
    (UUIDBindingError, "FAIL_UUID_BINDING"),
    (FormatError, "FAIL_FORMAT"),
    (UnlockError, "FAIL_UNLOCK"),
)

CLI_START_MONO = time.perf_counter()


def _error_kind(exc: BaseException) -> str:
    for cls, kind in _ERROR_KINDS:
        if isinstance(exc, cls):
            return kind
    if isinstance(exc, AwsKmsLuksError):
        return "FAIL_GENERIC"
    return "FAIL_UNHANDLED"


def _record_result(kind: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    path = resolve_log_path()
    if path:
        append_jsonl(path, payload)
    return payload


def _fail(exc: BaseException, extra: Optional[Dict[str, Any]] = None) -> None:
    kind = _error_kind(exc)
    payload = {"error": str(exc)}
    if extra:
        payload.update(extra)
    _record_result(kind, payload)
    print(f"{PROG}: {exc}", file=sys.stderr)
    raise SystemExit(RESULT_CODES[kind])


def _git_rev_parse(ref: str) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "-C", os.path.dirname(os.path.abspath(__file__)), "rev-parse", ref],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return proc.stdout.strip() or None


def build_info() -> BuildInfo:
    try:
        version = metadata.version(PROG)
    except metadata.PackageNotFoundError:
        version = "0+unknown"
    return BuildInfo(
        version=version,
        build_hash=os.environ.get("AWSKMSLUKS_BUILD_HASH") or _git_rev_parse("HEAD"),
        build_time=os.environ.get("AWSKMSLUKS_BUILD_TIME"),
    )


def version_text(build: BuildInfo) -> str:
    lines = [f"{PROG} version: {build.version}"]
    if build.build_hash:
        lines.append(f"build hash: {build.build_hash}")
    if build.build_time:
        lines.append(f"build time: {build.build_time}")
    return "\n".join(lines)


def _fqdn() -> str:
    try:
        name = socket.gethostname()
    except OSError as exc:
        raise ConfigError(f"could not get host's FQDN: {exc}") from exc
    if not name:
        raise ConfigError("could not get host's FQDN: empty hostname")
    return name


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Format and unlock LUKS devices with passphrases wrapped by AWS KMS.",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument("-encrypt", metavar="DEVICE", help="Generate a new key and luksFormat DEVICE with it")
    action.add_argument("-open", action="store_true", help="Open every LUKS device with a key in the local store")
    action.add_argument("-uuid", metavar="UUID", help="Print the passphrase of the LUKS device with this UUID")
    action.add_argument("-restore", metavar="UUID", help="Copy an archived key from S3 back into the local store")
    action.add_argument("-version", action="store_true", help="Print version information and exit")
    parser.add_argument("-config", metavar="PATH", default=None, help="Configuration file (default: /etc/awskmsluks/config.json)")
    parser.add_argument("-force", action="store_true", help="Format even if DEVICE already holds a LUKS header")
    return parser


def cmd_encrypt(args, authority: KeyAuthority) -> int:
    config = load_config(args.config)
    fqdn = _fqdn()
    root = key_store_dir()
    check_formattable(args.encrypt, force=args.force)
    key = new_data_key(authority, config.cmk_arn, fqdn, config.production)
    try:
        keystore.persist(key, config.key_archive_bucket, root, keystore.s3_client())
        format_device(args.encrypt, key, force=args.force)
    finally:
        key.wipe()
    _record_result("FORMAT_OK", {"device": args.encrypt, "uuid": key.uuid, "fqdn": fqdn})
    print(f"{args.encrypt} formatted with LUKS UUID {key.uuid}")
    return 0


def cmd_open(args, authority: KeyAuthority) -> int:
    load_config(args.config)
    fqdn = _fqdn()
    outcomes = unlock_all(key_store_dir(), fqdn, authority, DEV_BY_UUID)
    if not outcomes:
        print(f"no keys found for {fqdn} in {key_store_dir()}", file=sys.stderr)
    failed = []
    for uuid, outcome in outcomes:
        if isinstance(outcome, Exception):
            failed.append(uuid)
            print(f"{uuid}: {outcome}", file=sys.stderr)
        else:
            print(f"{uuid}: opened /dev/mapper/{outcome}")
    summary = {"fqdn": fqdn, "total": len(outcomes), "failed": failed}
    if failed:
        _record_result("FAIL_UNLOCK", summary)
        return RESULT_CODES["FAIL_UNLOCK"]
    _record_result("OPEN_OK", summary)
    return 0


def cmd_uuid(args, authority: KeyAuthority) -> int:
    load_config(args.config)
    fqdn = _fqdn()
    key = keystore.retrieve(key_store_dir(), fqdn, args.uuid, authority)
    try:
        sys.stdout.write(key.data_key.plain.decode("ascii"))
        sys.stdout.flush()
    finally:
        key.wipe()
    _record_result("UUID_OK", {"uuid": args.uuid, "fqdn": fqdn})
    return 0


def cmd_restore(args, authority: KeyAuthority) -> int:
    config = load_config(args.config)
    fqdn = _fqdn()
    root = key_store_dir()
    key = keystore.restore(config.key_archive_bucket, fqdn, args.restore, root, keystore.s3_client())
    _record_result("RESTORE_OK", {"uuid": key.uuid, "fqdn": fqdn})
    print(f"restored {keystore.key_path(root, fqdn, key.uuid)}")
    return 0


def _main_impl(argv: Optional[list[str]] = None, authority: KeyAuthority | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(version_text(build_info()))
        return 0

    if args.encrypt:
        handler = cmd_encrypt
    elif args.open:
        handler = cmd_open
    elif args.uuid:
        handler = cmd_uuid
    elif args.restore:
        handler = cmd_restore
    else:
        parser.print_usage(sys.stderr)
        print(f"{PROG}: one of -encrypt, -open, -uuid, -restore or -version is required", file=sys.stderr)
        _record_result("FAIL_USAGE")
        return RESULT_CODES["FAIL_USAGE"]

    info("cli.start", action=handler.__name__)
    try:
        return handler(args, authority or KeyAuthority())
    except AwsKmsLuksError as exc:
        _fail(exc, {"action": handler.__name__})
    return 0


def main(argv: Optional[list[str]] = None, authority: KeyAuthority | None = None) -> int:
    try:
        return _main_impl(argv, authority)
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001
        _fail(exc)
    return 0


if __name__ == "__main__":
    sys.exit(main())
