from conftest import ALL_TOOLS, FakeConnector

from nginx_upstream_audit.scanner.capabilities import CapabilityScanner


def test_detects_tools_ca_bundle_and_prior_knowledge():
    caps = CapabilityScanner(FakeConnector({"command -v": ALL_TOOLS})).scan()
    assert caps.tools == {"bash", "timeout", "nc", "curl", "openssl", "getent", "ss", "od"}
    assert caps.curl_http2_prior_knowledge is True
    assert caps.ca_bundle == "/etc/ssl/certs/ca-certificates.crt"
    assert caps.can_connect and caps.can_tls and caps.can_raw
    assert caps.limitations() == []


def test_missing_tools_become_limitations():
    caps = CapabilityScanner(FakeConnector({"command -v": "TOOL nc\nH2PK\n"})).scan()
    assert caps.can_connect
    assert not caps.can_tls
    assert caps.curl_http2_prior_knowledge is False
    notes = caps.limitations()
    assert "openssl or timeout missing: TLS probes skipped" in notes
    assert "curl missing: HTTP probes fall back to raw HEAD via nc" in notes
    assert "nc or timeout missing: memcached and gRPC preface probes skipped" in notes


def test_no_output_means_no_tools():
    caps = CapabilityScanner(FakeConnector()).scan()
    assert caps.tools == set()
    assert "no bash /dev/tcp or nc: TCP connect probes unavailable" in caps.limitations()
