"""Scanner package - probes run on the audited host."""

from nginx_upstream_audit.scanner.capabilities import CapabilityScanner
from nginx_upstream_audit.scanner.network_surface import ListenerCorrelator
from nginx_upstream_audit.scanner.nginx_collector import CollectorResult, NginxCollector
from nginx_upstream_audit.scanner.tls_status import TLSStatusScanner
from nginx_upstream_audit.scanner.upstream_probe import UpstreamProbeScanner

__all__ = [
    "CapabilityScanner",
    "CollectorResult",
    "ListenerCorrelator",
    "NginxCollector",
    "TLSStatusScanner",
    "UpstreamProbeScanner",
]
