"""Target normalizer - turns resolved candidate text into concrete endpoints."""

from __future__ import annotations

import re
from typing import Iterator

from nginx_upstream_audit.engine.bindings import BindingStore, VARIABLE_RE, variable_names
from nginx_upstream_audit.model.upstream import (
    Candidate,
    CandidateKind,
    Resolution,
    ResolutionStatus,
    ResolvedTarget,
    TLSDetection,
    Unresolved,
)

SCHEME_RE = re.compile(r"^(https?|grpcs?|memcached)://", re.IGNORECASE)

# Request-time variables that only ever carry the URI part.
PATH_VARIABLES = {"request_uri", "uri", "document_uri", "is_args", "args", "query_string"}

TLS_SCHEMES = {"https", "grpcs"}


def default_port(scheme: str) -> int:
    return 443 if scheme in TLS_SCHEMES else 80


def default_scheme(kind: CandidateKind) -> str:
    if kind is CandidateKind.GRPC:
        return "grpc"
    if kind is CandidateKind.MEMCACHED:
        return "memcached"
    return "http"


def split_host_port(hostport: str) -> tuple[str, int | None, bool]:
    """Split host[:port] with bracketed IPv6 support.

    Returns:
        (host, port or None, had_explicit_port)
    """
    if hostport.startswith("["):
        host, _, rest = hostport[1:].partition("]")
        port_s = rest[1:] if rest.startswith(":") else ""
        return host, (int(port_s) if port_s.isdigit() else None), bool(port_s)
    if hostport.count(":") == 1:
        host, _, port_s = hostport.partition(":")
        return host, (int(port_s) if port_s.isdigit() else None), bool(port_s)
    return hostport, None, False


class TargetNormalizer:
    """Builds ResolvedTargets from a candidate and its resolution."""

    def __init__(self, store: BindingStore) -> None:
        self.store = store

    def normalize(self, candidate: Candidate, resolution: Resolution) -> Iterator[ResolvedTarget]:
        """Yield one target, or one per upstream server for named upstreams."""
        text = resolution.text.strip().rstrip(";").strip()
        heuristic = resolution.heuristic
        unresolved = resolution.variables if isinstance(resolution, Unresolved) else ()

        if text.startswith("unix:"):
            yield self._unix(candidate, text[len("unix:"):], text, heuristic, unresolved)
            return

        m = SCHEME_RE.match(text)
        if m:
            scheme = m.group(1).lower()
            rest = text[m.end():]
        else:
            scheme = default_scheme(candidate.kind)
            rest = text

        # proxy_pass http://unix:/path/to.sock:/uri
        if rest.startswith("unix:"):
            sock = rest[len("unix:"):].split(":", 1)[0]
            yield self._unix(candidate, sock, text, heuristic, unresolved)
            return

        hostport = rest.split("/", 1)[0].split("?", 1)[0]
        hostport = hostport.rsplit("@", 1)[-1]
        hostport = self._strip_path_variables(hostport)

        host, port, explicit_port = split_host_port(hostport)
        host = host.rstrip("/")
        port = port or default_port(scheme)

        if not host or "$" in host or VARIABLE_RE.search(hostport):
            yield ResolvedTarget(
                scheme=scheme,
                host=host,
                port=port,
                origin=candidate,
                status=ResolutionStatus.TEMPLATED,
                resolved_text=text,
                unresolved=tuple(variable_names(hostport)) or unresolved,
                heuristic=heuristic,
            )
            return

        tls = TLSDetection.DECLARED if scheme in TLS_SCHEMES else TLSDetection.NONE
        block = self.store.upstream(host) if not explicit_port else None
        if block is not None:
            yield from self._expand_upstream(candidate, block, scheme, port, tls, text, heuristic, unresolved)
            return

        yield ResolvedTarget(
            scheme=scheme,
            host=host,
            port=port,
            origin=candidate,
            resolved_text=text,
            unresolved=unresolved,
            heuristic=heuristic,
            tls=tls,
            upstream_name=candidate.source_upstream,
        )

    @staticmethod
    def _strip_path_variables(hostport: str) -> str:
        """Cut `$request_uri`-style suffixes glued onto a host."""
        m = VARIABLE_RE.search(hostport)
        if not m:
            return hostport
        name = m.group(1) or m.group(2)
        if name in PATH_VARIABLES:
            return hostport[: m.start()]
        return hostport

    def _expand_upstream(self, candidate, block, scheme, port, tls, text, heuristic, unresolved):
        for server in block.servers:
            if server.is_unix_socket:
                yield ResolvedTarget(
                    scheme="unix",
                    host="",
                    port=0,
                    origin=candidate,
                    status=ResolutionStatus.UPSTREAM_EXPANDED,
                    socket_path=server.host,
                    resolved_text=text,
                    unresolved=unresolved,
                    heuristic=heuristic,
                    upstream_name=block.name,
                    upstream_server=server.raw_spec,
                )
                continue
            yield ResolvedTarget(
                scheme=scheme,
                host=server.host,
                port=server.port or port,
                origin=candidate,
                status=ResolutionStatus.UPSTREAM_EXPANDED,
                resolved_text=text,
                unresolved=unresolved,
                heuristic=heuristic,
                tls=tls,
                upstream_name=block.name,
                upstream_server=server.raw_spec,
            )

    @staticmethod
    def _unix(candidate, path, text, heuristic, unresolved) -> ResolvedTarget:
        if not path or "$" in path:
            return ResolvedTarget(
                scheme="unix",
                host="",
                port=0,
                origin=candidate,
                status=ResolutionStatus.TEMPLATED,
                socket_path=path,
                resolved_text=text,
                unresolved=tuple(variable_names(path)) or unresolved,
                heuristic=heuristic,
            )
        return ResolvedTarget(
            scheme="unix",
            host="",
            port=0,
            origin=candidate,
            socket_path=path,
            resolved_text=text,
            unresolved=unresolved,
            heuristic=heuristic,
            upstream_name=candidate.source_upstream,
        )
