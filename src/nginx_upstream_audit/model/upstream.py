"""Upstream model dataclasses - Core data structures for backend discovery and probing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class CandidateKind(Enum):
    """Which directive (or literal) produced a candidate."""

    PROXY = "proxy"
    FASTCGI = "fastcgi"
    UWSGI = "uwsgi"
    SCGI = "scgi"
    MEMCACHED = "memcached"
    GRPC = "grpc"
    URL = "url"
    UNIX = "unix"
    UPSTREAM_SERVER = "upstream_server"


class BindingSource(Enum):
    """Provenance of a variable binding, highest precedence first."""

    OVERRIDE = "override"
    SET = "set"
    MAP = "map"
    UPSTREAM = "upstream"


class ResolutionStatus(Enum):
    RESOLVED = "resolved"
    TEMPLATED = "templated"
    UPSTREAM_EXPANDED = "upstream-expanded"


class TLSDetection(Enum):
    """How TLS was established for a target."""

    DECLARED = "declared"  # https / grpcs scheme
    PROBED = "probed"  # detection handshake presented a certificate
    NONE = "none"


class ProbeStatus(Enum):
    UP = "UP"
    DOWN = "DOWN"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class Candidate:
    """A raw backend reference extracted from the configuration dump."""

    kind: CandidateKind
    raw_text: str
    source_upstream: str | None = None

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.raw_text}"


@dataclass(frozen=True)
class VariableBinding:
    name: str
    value: str
    source: BindingSource


@dataclass(frozen=True)
class MapRule:
    """One line of a `map $key $var { ... }` block."""

    DEFAULT_KEY = "__default__"

    target_var: str
    key: str
    value: str
    source_expr: str = ""  # the map's key expression, e.g. "$proto"

    @property
    def is_default(self) -> bool:
        return self.key == self.DEFAULT_KEY

    @property
    def is_regex(self) -> bool:
        return self.key.startswith("~")


@dataclass(frozen=True)
class ServerEntry:
    """A `server` line inside an upstream block."""

    host: str
    port: int | None
    is_unix_socket: bool
    raw_spec: str


@dataclass
class UpstreamBlock:
    """Nginx upstream block; server order is significant."""

    name: str
    servers: list[ServerEntry] = field(default_factory=list)

    @property
    def first_host(self) -> str | None:
        if not self.servers:
            return None
        return self.servers[0].host


@dataclass(frozen=True)
class Resolved:
    """Every variable in the candidate was bound."""

    text: str
    heuristic: bool = False


@dataclass(frozen=True)
class Unresolved:
    """Some variables could not be bound statically."""

    text: str
    variables: tuple[str, ...]
    heuristic: bool = False


Resolution = Resolved | Unresolved


@dataclass(frozen=True)
class ResolvedTarget:
    """A concrete endpoint ready for probing (unless templated)."""

    scheme: str  # http, https, grpc, grpcs, memcached, unix
    host: str
    port: int
    origin: Candidate
    status: ResolutionStatus = ResolutionStatus.RESOLVED
    socket_path: str | None = None
    resolved_text: str = ""
    unresolved: tuple[str, ...] = ()
    heuristic: bool = False
    tls: TLSDetection = TLSDetection.NONE
    upstream_name: str | None = None
    upstream_server: str | None = None

    @property
    def is_unix(self) -> bool:
        return self.scheme == "unix"

    @property
    def probeable(self) -> bool:
        return self.status is not ResolutionStatus.TEMPLATED

    @property
    def endpoint(self) -> str:
        if self.is_unix:
            return f"unix:{self.socket_path}"
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass
class CertificateInfo:
    index: int
    subject: str = ""
    issuer: str = ""
    not_before: str = ""
    not_after: str = ""
    verify_result: str | None = None
    saved_path: str | None = None


@dataclass
class TLSInfo:
    detection: TLSDetection = TLSDetection.NONE
    alpn: str | None = None
    alpn_forced: str | None = None  # explicit -alpn offer that produced `alpn`
    protocol: str | None = None
    cipher: str | None = None
    verify_result: str | None = None
    ocsp_present: bool = False
    ocsp_excerpt: list[str] = field(default_factory=list)
    cert_chain: list[CertificateInfo] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


@dataclass
class ListenerInfo:
    """Local process owning the listening socket a target points at."""

    pid: int | None = None
    process_name: str | None = None
    owner: str | None = None
    likely_backend: str | None = None
    lines: list[str] = field(default_factory=list)


@dataclass
class ProbeResult:
    target: ResolvedTarget
    status: ProbeStatus
    reason: str
    tcp_up: bool = False
    address: str | None = None  # IP actually connected to
    tls: TLSInfo | None = None
    http_status_line: str | None = None
    http_headers: list[str] = field(default_factory=list)
    protocol_specific: dict[str, str] = field(default_factory=dict)
    listener: ListenerInfo | None = None
    unavailable: list[str] = field(default_factory=list)


@dataclass
class ProbeCapabilities:
    """Tools available on the audited host, detected once per run."""

    tools: set[str] = field(default_factory=set)
    curl_http2_prior_knowledge: bool = False
    ca_bundle: str | None = None

    def has(self, tool: str) -> bool:
        return tool in self.tools

    @property
    def can_connect(self) -> bool:
        return (self.has("bash") and self.has("timeout")) or self.has("nc")

    @property
    def can_tls(self) -> bool:
        return self.has("openssl") and self.has("timeout")

    @property
    def can_http(self) -> bool:
        return self.has("curl") or self.has("nc")

    @property
    def can_raw(self) -> bool:
        return self.has("nc") and self.has("timeout")

    def limitations(self) -> list[str]:
        """Human-readable list of probe categories disabled for this run."""
        notes: list[str] = []
        if not self.can_connect:
            notes.append("no bash /dev/tcp or nc: TCP connect probes unavailable")
        if not self.can_tls:
            notes.append("openssl or timeout missing: TLS probes skipped")
        if not self.has("curl"):
            if self.has("nc"):
                notes.append("curl missing: HTTP probes fall back to raw HEAD via nc")
            else:
                notes.append("curl and nc missing: HTTP probes skipped")
        elif not self.curl_http2_prior_knowledge:
            notes.append("curl lacks --http2-prior-knowledge: GRPC_HTTP2_PRIOR skipped")
        if not self.can_raw:
            notes.append("nc or timeout missing: memcached and gRPC preface probes skipped")
        if not self.has("getent"):
            notes.append("getent missing: hostnames are connected to as-is")
        if not (self.has("ss") or self.has("netstat") or self.has("lsof")):
            notes.append("ss/netstat/lsof missing: listener correlation skipped")
        return notes


@dataclass
class AuditResult:
    """Everything one audit run produced."""

    dump_source: str = ""
    nginx_version: str = ""
    candidates: list[Candidate] = field(default_factory=list)
    results: list[ProbeResult] = field(default_factory=list)
    capabilities: ProbeCapabilities = field(default_factory=ProbeCapabilities)
    notes: list[str] = field(default_factory=list)
    auto_vars_path: str | None = None
    report_path: str | None = None

    @property
    def down_count(self) -> int:
        return sum(1 for r in self.results if r.status is ProbeStatus.DOWN)


@dataclass
class CandidatePlan:
    """A candidate with its resolution and the targets it fans out to."""

    candidate: Candidate
    resolution: Resolution
    targets: list[ResolvedTarget] = field(default_factory=list)
