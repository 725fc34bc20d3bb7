"""Connector package - where probe commands run (local host or over SSH)."""

from typing import Protocol

from nginx_upstream_audit.connector.local import LocalConnector
from nginx_upstream_audit.connector.ssh import CommandResult, SSHConfig, SSHConnector


class Connector(Protocol):
    """What scanners need from a connector."""

    def run(self, command: str, use_sudo: bool | None = None, timeout: float | None = None) -> CommandResult: ...

    def read_file(self, path: str) -> str | None: ...

    def glob(self, pattern: str) -> list[str]: ...


__all__ = ["CommandResult", "Connector", "LocalConnector", "SSHConfig", "SSHConnector"]
