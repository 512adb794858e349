"""Command execution substrate.

Every interaction with the container runtime, image registry and migration
runner goes through a :class:`CommandRunner`.  Production code uses
:class:`ShellCommandRunner`; tests swap in a scripted fake.
"""

from __future__ import annotations

import abc
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, Optional

from .cancellation import CancelToken, ensure_token
from .errors import CommandError, DeploymentCancelled

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a finished command."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr."""
        if self.stdout and self.stderr:
            return self.stdout.rstrip("\n") + "\n" + self.stderr
        return self.stdout or self.stderr


class CommandRunner(abc.ABC):
    """Runs a shell command string and returns its captured output."""

    @abc.abstractmethod
    def run(
        self,
        command: str,
        *,
        context: str = "command",
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        check: bool = True,
    ) -> CommandResult:
        """Run *command*.

        Raises :class:`CommandError` on a non-zero exit (when *check* is
        true) or on timeout, and :class:`DeploymentCancelled` if *cancel*
        fires while the command is running.
        """


def _pump(stream: IO[str], sink: list[str], context: str, label: str) -> None:
    for line in iter(stream.readline, ""):
        sink.append(line)
        logger.info("[%s] %s%s", context, label, line.rstrip("\n"))
    stream.close()


class ShellCommandRunner(CommandRunner):
    """Runs commands through ``sh -c`` with streamed output.

    Each line of stdout/stderr is logged as it arrives (prefixed with the
    caller-supplied context) and also captured for the result.  Commands
    run in their own process group so a timeout or cancellation tears down
    the whole pipeline, not just the shell.
    """

    def __init__(
        self,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        shell: str = "sh",
        kill_grace: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self.cwd = cwd
        self.env = env
        self.shell = shell
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval

    def run(
        self,
        command: str,
        *,
        context: str = "command",
        timeout: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
        check: bool = True,
    ) -> CommandResult:
        token = ensure_token(cancel)
        token.raise_if_cancelled()
        logger.info("[%s] Executing: %s", context, command)

        start = time.monotonic()
        proc = subprocess.Popen(
            [self.shell, "-c", command],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            cwd=self.cwd,
            env=self.env if self.env is not None else os.environ.copy(),
            start_new_session=True,
        )
        out: list[str] = []
        err: list[str] = []
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, out, context, ""), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err, context, "stderr: "), daemon=True),
        ]
        for reader in readers:
            reader.start()

        deadline = start + timeout if timeout else None
        timed_out = False
        try:
            while True:
                try:
                    proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if token.cancelled:
                    self._terminate(proc)
                    raise DeploymentCancelled(
                        f"Command cancelled ({token.reason}): {command}"
                    )
                if deadline is not None and time.monotonic() >= deadline:
                    self._terminate(proc)
                    timed_out = True
                    break
        finally:
            for reader in readers:
                reader.join(timeout=self.kill_grace)

        result = CommandResult(
            command=command,
            returncode=proc.returncode,
            stdout="".join(out),
            stderr="".join(err),
            duration=time.monotonic() - start,
        )
        if timed_out:
            logger.error("[%s] Timed out after %.0fs: %s", context, timeout, command)
            raise CommandError(command, output=result.output, timed_out=True, timeout=timeout)
        if check and not result.ok:
            logger.error("[%s] Exit code %d: %s", context, result.returncode, command)
            raise CommandError(command, returncode=result.returncode, output=result.output)
        return result

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            proc.wait()
