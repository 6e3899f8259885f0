"""Common utilities: subprocess helpers, retry with backoff and polling."""

import json
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from errors import BackendError

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Upper bound for a single backoff sleep
MAX_BACKOFF_SECONDS = 60.0


class CancelledError(Exception):
    """Raised when a run is cancelled while waiting."""


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    stdin: Optional[str] = None,
    redact: Optional[list[str]] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    Arguments listed in redact are masked in the debug log.
    """
    hidden = set(redact or [])
    logger.debug(f"Running: {' '.join('******' if a in hidden else a for a in cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=stdin,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def run_json(cmd: list[str], operation: str, timeout: int = 600) -> Any:
    """Run a command that prints JSON and return the parsed document.

    Empty output parses to None.

    Raises:
        BackendError: If the command fails or prints invalid JSON
    """
    rc, out, err = run_command(cmd, timeout=timeout)
    if rc != 0:
        raise BackendError(operation, err or out)
    if not out.strip():
        return None
    try:
        return json.loads(out)
    except json.JSONDecodeError as e:
        raise BackendError(operation, f"invalid JSON output: {e}")


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Exponential delay for a 1-based attempt number, capped."""
    return min(base_delay * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)


def retry_with_backoff(
    func: Callable[[], T],
    description: str,
    attempts: int = 3,
    base_delay: float = 2.0,
    retry_on: tuple = (BackendError,),
    cancel: Optional[threading.Event] = None,
) -> T:
    """Call func until it succeeds or attempts are exhausted.

    Waits between attempts honour the cancel event: a cancelled wait raises
    CancelledError instead of starting another attempt.

    Returns:
        The value returned by func

    Raises:
        The last exception from func once attempts are exhausted
        CancelledError: If cancel is set while waiting
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= attempts:
                logger.error(f"{description}: attempt {attempt}/{attempts} failed: {e}")
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                f"{description}: attempt {attempt}/{attempts} failed ({e}), "
                f"retrying in {delay:.1f}s"
            )
            _sleep(delay, cancel)
    raise AssertionError("unreachable")  # pragma: no cover


def poll_until(
    check: Callable[[], Optional[T]],
    description: str,
    timeout: float = 600,
    interval: float = 5,
    cancel: Optional[threading.Event] = None,
) -> Optional[T]:
    """Poll check() until it returns a non-None value or the timeout expires.

    Returns:
        The first non-None value, or None on timeout
    """
    logger.debug(f"Waiting for {description}...")
    start = time.time()
    while time.time() - start < timeout:
        value = check()
        if value is not None:
            return value
        logger.debug(f"{description} not ready, retrying in {interval}s...")
        _sleep(interval, cancel)
    logger.error(f"Timeout waiting for {description}")
    return None


def _sleep(seconds: float, cancel: Optional[threading.Event]) -> None:
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise CancelledError("Cancelled while waiting")
