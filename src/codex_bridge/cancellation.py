from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections.abc import Callable

logger = logging.getLogger("codex_bridge.cancellation")

_SIMPLE_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "\\": "\\"}
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def decode_escapes(value: str) -> str:
    """Expand ``\\n``, ``\\r``, ``\\t``, ``\\\\`` and ``\\xHH`` in a config string.

    Unknown escapes are kept verbatim, backslash included.
    """
    out: list[str] = []
    i = 0
    while i < len(value):
        ch = value[i]
        if ch != "\\" or i + 1 >= len(value):
            out.append(ch)
            i += 1
            continue
        nxt = value[i + 1]
        if nxt in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[nxt])
            i += 2
            continue
        hex_digits = value[i + 2 : i + 4]
        if nxt == "x" and len(hex_digits) == 2 and all(c in _HEX_DIGITS for c in hex_digits):
            out.append(chr(int(hex_digits, 16)))
            i += 4
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def write_stdin(proc: subprocess.Popen[str], text: str) -> bool:
    """Write text to a live process's stdin and flush it."""
    if proc.poll() is not None or proc.stdin is None:
        return False
    try:
        proc.stdin.write(text)
        proc.stdin.flush()
        return True
    except (BrokenPipeError, OSError, ValueError):
        logger.debug("Failed writing to stdin of pid=%s", proc.pid, exc_info=True)
        return False


def wait_for_exit(proc: subprocess.Popen[str], timeout: float) -> bool:
    if proc.poll() is not None:
        return True
    try:
        proc.wait(timeout=max(0.0, timeout))
        return True
    except subprocess.TimeoutExpired:
        return proc.poll() is not None


def kill_process_tree(proc: subprocess.Popen[str]) -> bool:
    """SIGKILL the process group, falling back to killing the process alone."""
    if proc.poll() is not None:
        return False
    pid = int(proc.pid)
    if hasattr(os, "killpg"):
        try:
            # start_new_session=True makes pid the process-group id.
            os.killpg(pid, signal.SIGKILL)
            return True
        except ProcessLookupError:
            return False
        except OSError:
            logger.debug("killpg failed for pid=%s, falling back to kill()", pid, exc_info=True)
    try:
        proc.kill()
        return True
    except OSError:
        logger.debug("Failed SIGKILL for pid=%s", pid, exc_info=True)
        return False


def cancel_process(
    proc: subprocess.Popen[str],
    soft_command: str = "",
    soft_timeout: float = 10.0,
    kill_timeout: float = 5.0,
    send_input: Callable[[str], bool] | None = None,
) -> bool:
    """Ask the process to stop, then kill its tree once ``soft_timeout`` runs out.

    Returns True when the process is known to have exited. The wait after
    the kill only affects that return value: cancellation counts as done
    once the kill signal has been issued.
    """
    if proc.poll() is not None:
        return True

    started = time.monotonic()
    if soft_command:
        decoded = decode_escapes(soft_command)
        writer = send_input or (lambda text: write_stdin(proc, text))
        if writer(decoded):
            logger.info("Sent soft cancel command to pid=%s", proc.pid)

    if wait_for_exit(proc, soft_timeout):
        logger.info("Process pid=%s exited after soft cancel (%.2fs)", proc.pid, time.monotonic() - started)
        return True

    logger.warning("Process pid=%s ignored soft cancel for %.1fs, killing process tree", proc.pid, soft_timeout)
    kill_process_tree(proc)
    exited = wait_for_exit(proc, kill_timeout)
    if not exited:
        logger.error("Process pid=%s still running %.1fs after kill", proc.pid, kill_timeout)
    return exited
