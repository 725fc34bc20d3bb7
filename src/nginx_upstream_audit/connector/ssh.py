"""SSH Connector - Read-only command execution on the audited host.

Every probe in this package is a shell command run on the host that nginx
lives on. SSHConnector runs them over SSH; LocalConnector (connector.local)
runs them on this machine. Both expose the same `run()` contract, which is
the seam tests replace with fakes.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import paramiko
from paramiko.ssh_exception import AuthenticationException, SSHException

logger = logging.getLogger(__name__)


@dataclass
class SSHConfig:
    """SSH connection configuration."""

    host: str
    user: str = "root"
    port: int = 22
    key_path: str | None = None
    password: str | None = None  # Fallback, prefer keys
    use_sudo: bool = True
    timeout: int = 30


@dataclass
class CommandResult:
    """Result of a command execution."""

    command: str
    stdout: str
    stderr: str
    exit_code: int
    success: bool = field(init=False)

    def __post_init__(self) -> None:
        self.success = self.exit_code == 0


class SSHConnector:
    """SSH connection manager for read-only probing of a remote server.

    Example:
        >>> config = SSHConfig(host="192.168.1.100", user="deploy")
        >>> with SSHConnector(config) as ssh:
        ...     result = ssh.run("nginx -T")
        ...     print(result.stdout)
    """

    def __init__(self, config: SSHConfig) -> None:
        self.config = config
        self._client: paramiko.SSHClient | None = None

    @property
    def label(self) -> str:
        return f"{self.config.user}@{self.config.host}:{self.config.port}"

    def connect(self) -> None:
        """Establish SSH connection.

        Raises:
            ConnectionError: on authentication or transport failure.
        """
        self._client = paramiko.SSHClient()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs: dict = {
            "hostname": self.config.host,
            "port": self.config.port,
            "username": self.config.user,
            "timeout": self.config.timeout,
        }

        # Prefer key-based authentication
        if self.config.key_path:
            key_path = Path(self.config.key_path).expanduser()
            if key_path.exists():
                connect_kwargs["key_filename"] = str(key_path)
        elif self.config.password:
            connect_kwargs["password"] = self.config.password

        try:
            self._client.connect(**connect_kwargs)
        except AuthenticationException as e:
            raise ConnectionError(f"Authentication failed: {e}") from e
        except SSHException as e:
            raise ConnectionError(f"SSH error: {e}") from e
        logger.debug("connected to %s", self.label)

    def disconnect(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "SSHConnector":
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.disconnect()

    def run(self, command: str, use_sudo: bool | None = None, timeout: float | None = None) -> CommandResult:
        """Execute a command on the remote server.

        Args:
            command: The command to execute.
            use_sudo: Whether to use sudo. Defaults to config setting.
            timeout: Command timeout in seconds. Defaults to config timeout.

        Returns:
            CommandResult with stdout, stderr, and exit_code. Transport errors
            and timeouts come back as exit code 255 instead of raising.
        """
        if not self._client:
            raise RuntimeError("Not connected. Use 'with SSHConnector(config):' context.")

        if use_sudo is None:
            use_sudo = self.config.use_sudo

        wrapped = f"sh -c {shlex.quote(command)}"
        if use_sudo and self.config.user != "root":
            if self.config.password:
                wrapped = f"echo {shlex.quote(self.config.password)} | sudo -S {wrapped}"
            else:
                wrapped = f"sudo -n {wrapped}"

        cmd_timeout = timeout if timeout is not None else self.config.timeout

        try:
            _stdin, stdout, stderr = self._client.exec_command(wrapped, timeout=cmd_timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
            return CommandResult(command=command, stdout=out, stderr=err, exit_code=exit_code)
        except Exception as e:
            logger.debug("ssh command failed: %s (%s)", command, e)
            return CommandResult(
                command=command,
                stdout="",
                stderr=f"SSH Execution Error: {str(e)}",
                exit_code=255,
            )

    def read_file(self, path: str) -> str | None:
        """Read file contents from remote server, or None if unreadable."""
        result = self.run(f"cat {shlex.quote(path)}")
        if result.success:
            return result.stdout
        return None

    def file_exists(self, path: str) -> bool:
        return self.run(f"test -f {shlex.quote(path)}").success

    def glob(self, pattern: str) -> list[str]:
        """Expand a shell glob on the remote host (no matches -> empty list)."""
        result = self.run(f"for f in {pattern}; do [ -e \"$f\" ] && echo \"$f\"; done")
        if not result.success and not result.stdout:
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]
