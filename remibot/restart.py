"""Restart the daemon in place, waiting for the new process to confirm startup.

The old process creates a named FIFO, starts a new copy of itself with the
FIFO path in ``REMI_DAEMON_READY_FIFO`` and waits for the new process to
write ``ok`` to it. Only then does the old process exit. If the new process
fails or stays silent, the old one keeps serving.
"""

from __future__ import annotations

import hashlib
import logging
import os
import select
import subprocess
import sys
import tempfile
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import requests

log = logging.getLogger(__name__)

READY_FIFO_ENV = "REMI_DAEMON_READY_FIFO"
READY_TIMEOUT_SECONDS = 30.0
EXIT_GRACE_SECONDS = 0.5
DOWNLOAD_TIMEOUT_SECONDS = 300
_READY_SIGNAL = b"ok"
_DELETED_SUFFIX = " (deleted)"
_POLL_INTERVAL = 0.1
_CHUNK_SIZE = 64 * 1024


class RestartError(Exception):
    """Raised when a restart or self-update is aborted."""


def current_executable() -> Path:
    """Path of the running program, without a trailing `` (deleted)`` marker."""
    candidates: list[str] = []
    if sys.argv and sys.argv[0]:
        candidates.append(sys.argv[0])
    try:
        candidates.append(os.readlink("/proc/self/exe"))
    except OSError:
        pass
    for candidate in candidates:
        path = Path(candidate.removesuffix(_DELETED_SUFFIX))
        if path.is_file():
            return path.resolve()
    return Path(sys.executable)


def parse_checksum(text: str) -> str:
    """Return the hash from ``sha256sum`` output (its first word, lower case)."""
    words = text.split()
    if not words:
        raise RestartError(f"could not parse checksum from: {text!r}")
    return words[0].lower()


def _fetch_text(url: str) -> str:
    try:
        response = requests.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
        response.raise_for_status()
        return response.text
    except requests.RequestException as exc:
        raise RestartError(f"GET {url}: {exc}") from exc


def _download(url: str, destination: Path) -> str:
    digest = hashlib.sha256()
    try:
        with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT_SECONDS) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                    digest.update(chunk)
                    handle.write(chunk)
    except requests.RequestException as exc:
        raise RestartError(f"GET {url}: {exc}") from exc
    except OSError as exc:
        raise RestartError(f"write temp file {destination}: {exc}") from exc
    return digest.hexdigest()


def download_and_replace(url: str) -> Path:
    """Download a new binary, verify it against ``<url>.sha256`` and install it.

    The verified file atomically replaces the running program, whose path is
    returned.
    """
    log.info("downloading new daemon binary from %s", url)
    target = current_executable()
    tmp = target.with_name(f".remi-daemon-new-{os.getpid()}")
    try:
        actual = _download(url, tmp)
        checksum_url = f"{url}.sha256"
        log.info("fetching checksum from %s", checksum_url)
        expected = parse_checksum(_fetch_text(checksum_url))
        if actual != expected:
            raise RestartError(
                f"SHA-256 mismatch — download aborted (expected {expected}, got {actual})"
            )
        log.info("checksum verified ok")
        try:
            tmp.chmod(0o755)
        except OSError as exc:
            raise RestartError(f"chmod temp binary: {exc}") from exc
        try:
            os.replace(tmp, target)
        except OSError as exc:
            raise RestartError(
                f"rename {tmp} → {target} (ensure you have write permission): {exc}"
            ) from exc
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    log.info("daemon binary replaced at %s", target)
    return target


def signal_ready() -> bool:
    """Tell the parent process that startup succeeded.

    Returns False when this process was not started by a restart or the
    signal could not be written.
    """
    fifo_path = os.environ.get(READY_FIFO_ENV)
    if fifo_path is None:
        return False
    try:
        with open(fifo_path, "wb") as handle:
            handle.write(_READY_SIGNAL)
    except OSError as exc:
        log.warning("failed to signal readiness to parent: %s", exc)
        return False
    log.info("signalled readiness to parent via %s", fifo_path)
    return True


class RestartHandle:
    """Starts a replacement daemon process and exits once it is up."""

    def __init__(
        self,
        executable: str | Path | None = None,
        args: Sequence[str] | None = None,
        fifo_dir: str | Path | None = None,
        timeout: float = READY_TIMEOUT_SECONDS,
        exit_grace: float = EXIT_GRACE_SECONDS,
        exit_process: Callable[[int], object] = sys.exit,
    ) -> None:
        self.executable = Path(executable) if executable is not None else None
        self.args = list(args) if args is not None else None
        self.fifo_dir = Path(fifo_dir) if fifo_dir is not None else None
        self.timeout = timeout
        self.exit_grace = exit_grace
        self.exit_process = exit_process

    def spawn_restart(self, update_url: str | None = None) -> None:
        """Optionally self-update, start a new process and exit once it confirms."""
        if update_url is not None:
            try:
                download_and_replace(update_url)
            except RestartError as exc:
                raise RestartError(
                    f"self-update download failed — restart aborted: {exc}"
                ) from exc

        directory = self.fifo_dir or Path(tempfile.gettempdir())
        fifo = directory / f"remi-daemon-ready-{os.getpid()}.fifo"
        fifo.unlink(missing_ok=True)
        try:
            os.mkfifo(fifo, 0o600)
        except OSError as exc:
            raise RestartError(f"mkfifo({fifo}): {exc}") from exc

        try:
            ready = self._spawn_and_wait(fifo)
        finally:
            fifo.unlink(missing_ok=True)

        if not ready:
            log.error("new daemon process sent unexpected signal — restart aborted")
            raise RestartError("unexpected startup signal from child process")
        log.info("new daemon process confirmed startup — exiting")
        time.sleep(self.exit_grace)
        self.exit_process(0)

    def _command(self) -> list[str]:
        executable = self.executable or current_executable()
        args = self.args if self.args is not None else sys.argv[1:]
        return [str(executable), *args]

    def _spawn_and_wait(self, fifo: Path) -> bool:
        read_fd = os.open(fifo, os.O_RDONLY | os.O_NONBLOCK)
        # Holding a write end keeps the FIFO from reporting end-of-file.
        write_fd = os.open(fifo, os.O_WRONLY | os.O_NONBLOCK)
        try:
            command = self._command()
            env = {**os.environ, READY_FIFO_ENV: str(fifo)}
            try:
                child = subprocess.Popen(command, env=env)
            except OSError as exc:
                raise RestartError(f"spawn({command[0]}): {exc}") from exc
            log.info("spawned new daemon process %d (%s)", child.pid, command[0])
            return self._read_signal(read_fd, child) == _READY_SIGNAL
        finally:
            os.close(write_fd)
            os.close(read_fd)

    def _read_signal(self, read_fd: int, child: subprocess.Popen[bytes]) -> bytes:
        deadline = time.monotonic() + self.timeout
        received = b""
        while len(received) < len(_READY_SIGNAL):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.warning(
                    "new daemon process did not confirm startup within %g s — restart aborted",
                    self.timeout,
                )
                raise RestartError(
                    "new daemon process timed out — original process continues serving"
                )
            exited = child.poll() is not None
            readable, _, _ = select.select([read_fd], [], [], min(remaining, _POLL_INTERVAL))
            if readable:
                received += os.read(read_fd, len(_READY_SIGNAL) - len(received))
            elif exited:
                raise RestartError(
                    f"new daemon process exited with status {child.returncode} "
                    "before confirming startup"
                )
        return received