"""Local Connector - runs probe commands on this machine."""

from __future__ import annotations

import glob as _glob
import logging
import os
import socket
import subprocess

from nginx_upstream_audit.connector.ssh import CommandResult

logger = logging.getLogger(__name__)


class LocalConnector:
    """Same contract as SSHConnector, backed by subprocess."""

    def __init__(self, timeout: int = 30, shell: str = "/bin/sh") -> None:
        self.timeout = timeout
        self.shell = shell

    @property
    def label(self) -> str:
        return f"local ({socket.gethostname()})"

    def __enter__(self) -> "LocalConnector":
        return self

    def __exit__(self, *args: object) -> None:
        return None

    def run(self, command: str, use_sudo: bool | None = None, timeout: float | None = None) -> CommandResult:
        """Execute a shell command locally; timeouts come back as exit code 124."""
        cmd_timeout = timeout if timeout is not None else self.timeout
        try:
            proc = subprocess.run(
                [self.shell, "-c", command],
                capture_output=True,
                timeout=cmd_timeout,
                env={**os.environ, "LC_ALL": "C"},
            )
        except subprocess.TimeoutExpired as e:
            logger.debug("local command timed out after %ss: %s", cmd_timeout, command)
            stdout = e.stdout.decode("utf-8", errors="replace") if e.stdout else ""
            return CommandResult(command=command, stdout=stdout, stderr="timeout", exit_code=124)
        except OSError as e:
            return CommandResult(command=command, stdout="", stderr=str(e), exit_code=127)
        return CommandResult(
            command=command,
            stdout=proc.stdout.decode("utf-8", errors="replace"),
            stderr=proc.stderr.decode("utf-8", errors="replace"),
            exit_code=proc.returncode,
        )

    def read_file(self, path: str) -> str | None:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return None

    def file_exists(self, path: str) -> bool:
        return os.path.isfile(path)

    def glob(self, pattern: str) -> list[str]:
        return sorted(_glob.glob(pattern))
