"""Nginx Configuration Parser - backend discovery over a flattened config dump.

Works on the output of `nginx -T` (or an include-expanded concatenation) and
pulls out only what backend discovery needs:
1. Directives naming a backend (`*_pass`, URL and `unix:` literals, upstream servers)
2. `set $var value;` statements
3. `map $key $var { ... }` blocks
4. `upstream name { server ...; }` blocks

IMPORTANT DESIGN NOTES:
1. This is pattern extraction, not a grammar. Anything that does not match a
   well-formed pattern is ignored rather than reported as an error.
2. Directives may share a line, so matching runs over the whole text.
3. Comments (whole-line and trailing) are removed first so commented-out
   directives never become candidates.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from nginx_upstream_audit.model.upstream import (
    Candidate,
    CandidateKind,
    MapRule,
    ServerEntry,
    UpstreamBlock,
)


@dataclass
class SetStatement:
    """A parsed `set $name value;` statement."""

    name: str
    value: str


@dataclass
class ParsedConfig:
    """Everything backend discovery needs from one dump."""

    candidates: list[Candidate] = field(default_factory=list)
    upstreams: list[UpstreamBlock] = field(default_factory=list)
    set_statements: list[SetStatement] = field(default_factory=list)
    map_rules: list[MapRule] = field(default_factory=list)

    def upstream(self, name: str) -> UpstreamBlock | None:
        for block in self.upstreams:
            if block.name == name:
                return block
        return None


def strip_quotes(value: str) -> str:
    """Remove one pair of matching wrapping quotes."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


def strip_line_comment(line: str) -> str:
    """Cut a line at the first `#` that starts a token outside quotes.

    Example: 'server 10.0.0.1:9000; # primary' -> 'server 10.0.0.1:9000; '
    """
    quote = None
    prev = " "
    for i, ch in enumerate(line):
        if quote:
            if ch == quote and prev != "\\":
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch == "#" and (prev.isspace() or prev in ";{}"):
            return line[:i]
        prev = ch
    return line


def strip_comments(text: str) -> str:
    """Remove whole-line and trailing comments, keeping line structure."""
    return "\n".join(strip_line_comment(line) for line in text.split("\n"))


def parse_server_entry(spec: str) -> ServerEntry | None:
    """Parse the argument of an upstream `server` line.

    Example: "10.0.0.1:9000 weight=5 max_fails=3" -> host 10.0.0.1, port 9000
    """
    raw_spec = " ".join(spec.split())
    if not raw_spec:
        return None
    address = strip_quotes(raw_spec.split()[0])

    if address.startswith("unix:"):
        return ServerEntry(host=address[len("unix:"):], port=None, is_unix_socket=True, raw_spec=raw_spec)

    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port_s = rest[1:] if rest.startswith(":") else ""
        return ServerEntry(
            host=host,
            port=int(port_s) if port_s.isdigit() else None,
            is_unix_socket=False,
            raw_spec=raw_spec,
        )

    if address.count(":") == 1:
        host, _, port_s = address.partition(":")
        return ServerEntry(
            host=host,
            port=int(port_s) if port_s.isdigit() else None,
            is_unix_socket=False,
            raw_spec=raw_spec,
        )

    return ServerEntry(host=address, port=None, is_unix_socket=False, raw_spec=raw_spec)


class DirectiveExtractor:
    """Extracts backend candidates and binding sources from an nginx dump.

    Example:
        >>> parsed = DirectiveExtractor().parse(dump)
        >>> [c.label for c in parsed.candidates]
        ['proxy:http://api', 'upstream_server:127.0.0.1:8081']
    """

    PASS_DIRECTIVES = ("fastcgi_pass", "uwsgi_pass", "scgi_pass", "memcached_pass", "grpc_pass")

    PROXY_PASS_RE = re.compile(r"(?<![\w$])proxy_pass\s+([^;{}]+)")
    OTHER_PASS_RE = re.compile(r"(?<![\w$])(fastcgi_pass|uwsgi_pass|scgi_pass|memcached_pass|grpc_pass)\s+([^;{}]+)")
    URL_RE = re.compile(r"https?://[A-Za-z0-9._:%@\-\[\]]+")
    UNIX_RE = re.compile(r"unix:[^;\s)\"'{}]+")
    UPSTREAM_RE = re.compile(r"(?<![\w$])upstream\s+([^\s{};]+)\s*\{([^{}]*)\}")
    SET_RE = re.compile(r"(?<![\w$])set\s+\$([A-Za-z0-9_]+)\s+([^;]+);")
    MAP_RE = re.compile(r"(?<![\w$])map\s+(\S+)\s+\$([A-Za-z0-9_]+)\s*\{([^{}]*)\}")
    MAP_TOKEN_RE = re.compile(r"\"([^\"]*)\"|'([^']*)'|(\S+)")

    MAP_FLAGS = {"hostnames", "volatile"}

    def parse(self, dump: str) -> ParsedConfig:
        """Run every extraction over one dump.

        Args:
            dump: Flattened nginx configuration text.

        Returns:
            ParsedConfig with candidates in extraction order.
        """
        text = self.strip_comments(dump or "")
        return ParsedConfig(
            candidates=self._extract(text),
            upstreams=self.parse_upstreams(text),
            set_statements=self.parse_set_statements(text),
            map_rules=self.parse_map_rules(text),
        )

    def extract(self, dump: str) -> list[Candidate]:
        return self._extract(self.strip_comments(dump or ""))

    def strip_comments(self, dump: str) -> str:
        return strip_comments(dump)

    def _extract(self, text: str) -> list[Candidate]:
        found: list[Candidate] = []
        masked = list(text)

        def _mask(start: int, end: int) -> None:
            for i in range(start, end):
                if masked[i] != "\n":
                    masked[i] = " "

        # (i) proxy_pass
        for m in self.PROXY_PASS_RE.finditer(text):
            self._add(found, CandidateKind.PROXY, m.group(1))
            _mask(m.start(1), m.end(1))

        # (ii) fastcgi/uwsgi/scgi/memcached/grpc _pass
        for m in self.OTHER_PASS_RE.finditer(text):
            kind = CandidateKind(m.group(1)[: -len("_pass")])
            self._add(found, kind, m.group(2))
            _mask(m.start(2), m.end(2))

        upstream_matches = list(self.UPSTREAM_RE.finditer(text))
        for m in upstream_matches:
            _mask(m.start(2), m.end(2))

        masked_text = "".join(masked)

        # (iii) literal URLs outside pass arguments and upstream bodies
        for m in self.URL_RE.finditer(masked_text):
            self._add(found, CandidateKind.URL, m.group(0).rstrip(":"))

        # (iv) unix sockets outside pass arguments and upstream bodies
        for m in self.UNIX_RE.finditer(masked_text):
            self._add(found, CandidateKind.UNIX, m.group(0))

        # (v) upstream server lines
        for m in upstream_matches:
            name = m.group(1)
            for entry in self._server_specs(m.group(2)):
                address = entry.split()[0]
                self._add(found, CandidateKind.UPSTREAM_SERVER, address, source_upstream=name)

        return found

    @staticmethod
    def _add(
        found: list[Candidate],
        kind: CandidateKind,
        raw: str,
        source_upstream: str | None = None,
    ) -> None:
        cleaned = strip_quotes(" ".join(raw.split()))
        if not cleaned:
            return
        candidate = Candidate(kind=kind, raw_text=cleaned, source_upstream=source_upstream)
        if candidate not in found:
            found.append(candidate)

    @staticmethod
    def _server_specs(body: str) -> list[str]:
        specs: list[str] = []
        for stmt in body.split(";"):
            stmt = stmt.strip()
            if stmt.startswith("server") and len(stmt) > len("server") and stmt[len("server")].isspace():
                spec = stmt[len("server"):].strip()
                if spec:
                    specs.append(spec)
        return specs

    def parse_upstreams(self, text: str) -> list[UpstreamBlock]:
        """Parse upstream blocks, preserving server order."""
        blocks: list[UpstreamBlock] = []
        for m in self.UPSTREAM_RE.finditer(text):
            block = UpstreamBlock(name=m.group(1))
            for spec in self._server_specs(m.group(2)):
                entry = parse_server_entry(spec)
                if entry:
                    block.servers.append(entry)
            blocks.append(block)
        return blocks

    def parse_set_statements(self, text: str) -> list[SetStatement]:
        return [
            SetStatement(name=m.group(1), value=strip_quotes(m.group(2)))
            for m in self.SET_RE.finditer(text)
        ]

    def parse_map_rules(self, text: str) -> list[MapRule]:
        """Parse map blocks into (target_var, key, value) rules.

        Example: map $proto $scheme { default http; "grpc" grpcs; }
        yields scheme|__default__|http and scheme|grpc|grpcs.
        """
        rules: list[MapRule] = []
        for m in self.MAP_RE.finditer(text):
            source_expr = strip_quotes(m.group(1))
            target_var = m.group(2)
            for stmt in m.group(3).split(";"):
                tokens = [
                    next(g for g in tok.groups() if g is not None)
                    for tok in self.MAP_TOKEN_RE.finditer(stmt)
                ]
                if not tokens:
                    continue
                if len(tokens) == 1 and tokens[0] in self.MAP_FLAGS:
                    continue
                if tokens[0] == "include" or len(tokens) < 2:
                    continue
                key = MapRule.DEFAULT_KEY if tokens[0] == "default" else tokens[0]
                rules.append(
                    MapRule(target_var=target_var, key=key, value=tokens[-1], source_expr=source_expr)
                )
        return rules
