"""Subprocess wrappers, the stdin secret channel and JSONL trace logging."""

from __future__ import annotations

import datetime as _dt
import json
import os
import subprocess
import threading
import time
from typing import IO, Sequence

from .errors import SubprocessTimeout
from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "awskmsluks.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/tmp/awskmsluks-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, mode=0o700, exist_ok=True)
        except OSError:
            continue
        LOG_PATH = os.path.join(d_expanded, LOG_NAME)
        return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("AWSKMSLUKS_LOG_LEVEL", "INFO").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 20)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def error(event: str, **fields):
    log("ERROR", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float = 60.0,
    env: dict | None = None,
) -> Result:
    """Run a command that takes no secret input and capture its output."""

    trace("exec.start", cmd=list(cmd))
    started = time.time()
    try:
        proc = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout, env=env)
    except subprocess.TimeoutExpired as exc:
        error("exec.timeout", cmd=list(cmd), timeout=timeout)
        raise SubprocessTimeout(cmd, timeout) from exc
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, err=proc.stderr)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


def _feed(pipe: IO[bytes], data) -> None:
    # A child that exits before reading its input closes the pipe under us;
    # its exit status reports the failure.
    try:
        pipe.write(data)
        pipe.flush()
    except BrokenPipeError:
        pass
    finally:
        try:
            pipe.close()
        except BrokenPipeError:
            pass


def _reap(proc: subprocess.Popen) -> None:
    proc.kill()
    proc.wait()


def run_secret(
    cmd: Sequence[str],
    secret: bytes | bytearray | memoryview,
    timeout: float = 60.0,
    stdout: IO | None = None,
    stderr: IO | None = None,
) -> Result:
    """Run ``cmd`` with ``secret`` streamed to its stdin.

    A writer thread pushes the bytes and closes stdin while this thread waits
    for the exit status, so a child that fills its output buffers before
    draining stdin cannot deadlock us.  The secret never appears in argv, the
    environment or the log; only its length is recorded.  The child's stdout
    and stderr are inherited unless file objects are given.  A child still
    running after ``timeout`` seconds is killed and ``SubprocessTimeout`` is
    raised.
    """

    argv = list(cmd)
    trace("exec.start", cmd=argv, stdin_bytes=len(secret))
    started = time.time()
    proc = subprocess.Popen(argv, stdin=subprocess.PIPE, stdout=stdout, stderr=stderr)
    writer = threading.Thread(target=_feed, args=(proc.stdin, secret), name="stdin-writer", daemon=True)
    writer.start()
    try:
        rc = proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        _reap(proc)
        error("exec.timeout", cmd=argv, timeout=timeout)
        raise SubprocessTimeout(argv, timeout) from None
    except BaseException:
        _reap(proc)
        raise
    finally:
        writer.join()
    dur = time.time() - started
    trace("exec.done", cmd=argv, rc=rc, dur=dur)
    return Result(rc, "", "", dur)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
