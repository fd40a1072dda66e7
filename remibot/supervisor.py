"""Run the agent as a local child process and restart it whenever it exits."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from pathlib import Path

log = logging.getLogger(__name__)

AGENT_BIN_ENV = "AGENT_BIN"
AGENT_BIN_NAME = "remi-cat-agent"
RESTART_DELAY_SECONDS = 2.0


def find_agent_bin() -> Path:
    """Locate the agent executable.

    ``AGENT_BIN`` wins when set; otherwise the agent is looked for next to
    the running program.
    """
    override = os.environ.get(AGENT_BIN_ENV)
    if override is not None:
        return Path(override)
    program = Path(sys.argv[0] or ".").resolve()
    candidate = program.parent / AGENT_BIN_NAME
    if candidate.exists():
        return candidate
    raise FileNotFoundError(
        f"cannot find {AGENT_BIN_NAME} binary (tried {str(candidate)!r}); "
        f"set {AGENT_BIN_ENV} env var to specify the path"
    )


class LocalAgentSupervisor:
    """Spawn the agent with the daemon's address and keep it running."""

    def __init__(
        self,
        daemon_addr: str,
        agent_bin: str | Path | None = None,
        restart_delay: float = RESTART_DELAY_SECONDS,
        max_runs: int | None = None,
    ) -> None:
        self.agent_bin = Path(agent_bin) if agent_bin is not None else find_agent_bin()
        self.daemon_addr = daemon_addr
        self.restart_delay = restart_delay
        self.max_runs = max_runs

    def spawn_child(self) -> subprocess.Popen[bytes]:
        """Start one agent process; its output goes to this terminal."""
        log.info("starting remi-cat %s (daemon at %s)", self.agent_bin, self.daemon_addr)
        env = {**os.environ, "DAEMON_ADDR": self.daemon_addr, "REMI_BASH_MODE": "local"}
        return subprocess.Popen([str(self.agent_bin)], env=env)

    def _run_once(self) -> int | None:
        try:
            child = self.spawn_child()
        except OSError as exc:
            log.error("cannot start remi-cat: %s", exc)
            return None
        try:
            code = child.wait()
        except OSError as exc:
            log.error("waiting for remi-cat failed: %s", exc)
            return None
        if code == 0:
            log.info("remi-cat exited cleanly")
        else:
            log.warning("remi-cat exited with status %d", code)
        return code

    def supervise(self) -> list[int | None]:
        """Run the agent, restarting it after each exit.

        Runs forever unless ``max_runs`` is set; then returns the exit code of
        each run, with None for runs that could not be started or awaited.
        """
        results: list[int | None] = []
        while self.max_runs is None or len(results) < self.max_runs:
            results.append(self._run_once())
            if self.max_runs is not None and len(results) >= self.max_runs:
                break
            log.info("restarting remi-cat in %g s…", self.restart_delay)
            time.sleep(self.restart_delay)
        return results