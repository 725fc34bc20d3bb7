"""Model package - Core data structures for nginx-upstream-audit."""

from nginx_upstream_audit.model.upstream import (
    AuditResult,
    BindingSource,
    Candidate,
    CandidateKind,
    CandidatePlan,
    CertificateInfo,
    ListenerInfo,
    MapRule,
    ProbeCapabilities,
    ProbeResult,
    ProbeStatus,
    Resolution,
    Resolved,
    ResolvedTarget,
    ResolutionStatus,
    ServerEntry,
    TLSDetection,
    TLSInfo,
    Unresolved,
    UpstreamBlock,
    VariableBinding,
)

__all__ = [
    "AuditResult",
    "BindingSource",
    "Candidate",
    "CandidateKind",
    "CandidatePlan",
    "CertificateInfo",
    "ListenerInfo",
    "MapRule",
    "ProbeCapabilities",
    "ProbeResult",
    "ProbeStatus",
    "Resolution",
    "Resolved",
    "ResolvedTarget",
    "ResolutionStatus",
    "ServerEntry",
    "TLSDetection",
    "TLSInfo",
    "Unresolved",
    "UpstreamBlock",
    "VariableBinding",
]
