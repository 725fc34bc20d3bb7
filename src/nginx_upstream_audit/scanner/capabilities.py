"""Capability Scanner - which probe tools exist on the audited host.

Detected once per run. A missing tool disables its probe category for the
whole run and the report lists the limitation once.
"""

from __future__ import annotations

import logging

from nginx_upstream_audit.connector import Connector
from nginx_upstream_audit.model.upstream import ProbeCapabilities

logger = logging.getLogger(__name__)

TOOLS = ("bash", "timeout", "nc", "curl", "openssl", "getent", "ss", "netstat", "lsof", "od")

CA_BUNDLES = (
    "/etc/ssl/certs/ca-certificates.crt",
    "/etc/ssl/certs/ca-bundle.crt",
    "/etc/pki/tls/certs/ca-bundle.crt",
    "/etc/ssl/cert.pem",
)


class CapabilityScanner:
    """Detects probe tooling with a single round-trip."""

    def __init__(self, ssh: Connector) -> None:
        self.ssh = ssh

    def scan(self) -> ProbeCapabilities:
        cmd = (
            f"for b in {' '.join(TOOLS)}; do command -v $b >/dev/null 2>&1 && echo TOOL $b; done; "
            "(curl --help all 2>/dev/null || curl --help 2>/dev/null) "
            "| grep -q -- '--http2-prior-knowledge' && echo H2PK; "
            f"for c in {' '.join(CA_BUNDLES)}; do [ -f $c ] && {{ echo CA $c; break; }}; done; true"
        )
        res = self.ssh.run(cmd, timeout=10)
        caps = ProbeCapabilities()
        for line in (res.stdout or "").splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) != 2 and parts != ["H2PK"]:
                continue
            if parts[0] == "TOOL":
                caps.tools.add(parts[1].strip())
            elif parts[0] == "CA":
                caps.ca_bundle = parts[1].strip()
            elif parts[0] == "H2PK":
                caps.curl_http2_prior_knowledge = True
        if not caps.has("curl"):
            caps.curl_http2_prior_knowledge = False
        logger.debug("probe tools: %s", ", ".join(sorted(caps.tools)) or "none")
        return caps
