"""Network Surface Scanner - maps probed targets to the local processes listening on them."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from nginx_upstream_audit.connector import Connector
from nginx_upstream_audit.model.upstream import (
    CandidateKind,
    ListenerInfo,
    ProbeCapabilities,
    ResolvedTarget,
)

logger = logging.getLogger(__name__)

LOCAL_TOKEN_RE = re.compile(r"^(\[[^\]]*\]|\S*):(\d+)$")
SS_PROC_RE = re.compile(r'\("([^"]+)",pid=(\d+)')
NETSTAT_PROC_RE = re.compile(r"\b(\d+)/(\S+)")

# (candidate kind, process-name fragment) -> likely backend
BACKEND_RULES: list[tuple[CandidateKind, str, str]] = [
    (CandidateKind.FASTCGI, "php", "php-fpm"),
    (CandidateKind.UWSGI, "uwsgi", "uwsgi"),
    (CandidateKind.SCGI, "python", "scgi/python"),
    (CandidateKind.MEMCACHED, "memcached", "memcached"),
]


@dataclass
class ListenerEntry:
    """One row of the listening-socket table."""

    port: int | None
    path: str | None
    pid: int | None
    program: str | None
    line: str


class ListenerCorrelator:
    """Builds the listening table once, then answers per-target lookups."""

    def __init__(self, ssh: Connector, capabilities: ProbeCapabilities) -> None:
        self.ssh = ssh
        self.capabilities = capabilities
        self._entries: list[ListenerEntry] | None = None

    def scan(self) -> list[ListenerEntry]:
        """Fetch TCP and Unix listeners (idempotent)."""
        if self._entries is not None:
            return self._entries
        entries: list[ListenerEntry] = []
        caps = self.capabilities
        if caps.has("ss"):
            entries += self._parse_tcp(self._run("ss -H -ltnp"), "ss")
            entries += self._parse_unix(self._run("ss -H -xlp"))
        elif caps.has("netstat"):
            entries += self._parse_tcp(self._run("netstat -ltnp"), "netstat")
            entries += self._parse_unix(self._run("netstat -lxp"))
        elif caps.has("lsof"):
            entries += self._parse_tcp(self._run("lsof -nP -iTCP -sTCP:LISTEN"), "lsof")
        self._entries = entries
        logger.debug("listening table: %d entries", len(entries))
        return entries

    def correlate(self, target: ResolvedTarget) -> ListenerInfo | None:
        entries = self.scan()
        if target.is_unix:
            matches = [e for e in entries if e.path and e.path == target.socket_path]
        else:
            matches = [e for e in entries if e.port is not None and e.port == target.port]
        if not matches:
            return None

        info = ListenerInfo(lines=[m.line for m in matches])
        first = next((m for m in matches if m.pid is not None), matches[0])
        info.pid = first.pid
        info.process_name = first.program
        programs = [(m.program or "").lower() for m in matches]
        if any("nginx" in p for p in programs):
            info.owner = "nginx"
        else:
            info.likely_backend = self._classify(target.origin.kind, programs)
        return info

    @staticmethod
    def _classify(kind: CandidateKind, programs: list[str]) -> str | None:
        for rule_kind, fragment, backend in BACKEND_RULES:
            if kind is rule_kind and any(fragment in p for p in programs):
                return backend
        return None

    def _run(self, cmd: str) -> str:
        res = self.ssh.run(f"{cmd} 2>/dev/null", timeout=10)
        return res.stdout or ""

    def _parse_tcp(self, output: str, tool: str) -> list[ListenerEntry]:
        entries: list[ListenerEntry] = []
        for line in output.splitlines():
            clean = line.strip()
            if not clean:
                continue
            parts = clean.split()
            if tool == "netstat" and not parts[0].lower().startswith("tcp"):
                continue
            if tool == "lsof" and parts[0] == "COMMAND":
                continue
            port = self._find_port(parts)
            if port is None:
                continue
            pid, program = self._owner(clean, parts, tool)
            entries.append(ListenerEntry(port=port, path=None, pid=pid, program=program, line=clean))
        return entries

    def _parse_unix(self, output: str) -> list[ListenerEntry]:
        entries: list[ListenerEntry] = []
        for line in output.splitlines():
            clean = line.strip()
            path = next((p for p in clean.split() if p.startswith("/")), None)
            if not path:
                continue
            tool = "ss" if "users:(" in clean else "netstat"
            pid, program = self._owner(clean, clean.split(), tool)
            entries.append(ListenerEntry(port=None, path=path, pid=pid, program=program, line=clean))
        return entries

    @staticmethod
    def _find_port(parts: list[str]) -> int | None:
        # The first address:port token is the local side; peers are "*" / "0.0.0.0:*".
        for token in parts:
            m = LOCAL_TOKEN_RE.match(token)
            if m:
                return int(m.group(2))
        return None

    @staticmethod
    def _owner(line: str, parts: list[str], tool: str) -> tuple[int | None, str | None]:
        if tool == "ss":
            m = SS_PROC_RE.search(line)
            if m:
                return int(m.group(2)), m.group(1)
            return None, None
        if tool == "netstat":
            m = NETSTAT_PROC_RE.search(line)
            if m:
                return int(m.group(1)), m.group(2).rstrip(":")
            return None, None
        if len(parts) > 1 and parts[1].isdigit():
            return int(parts[1]), parts[0]
        return None, None
