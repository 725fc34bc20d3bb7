"""Tests for TLS inspection from canned openssl s_client output."""

import pytest
from conftest import FakeConnector

from nginx_upstream_audit.model import Candidate, CandidateKind, ProbeCapabilities, ResolvedTarget, TLSDetection
from nginx_upstream_audit.scanner.budget import ProbeBudget
from nginx_upstream_audit.scanner.tls_status import CertChainWorkspace, TLSStatusScanner, is_ip_literal

CAPS = ProbeCapabilities(tools={"openssl", "timeout"}, ca_bundle="/etc/ssl/certs/ca-certificates.crt")

VERIFY_OUT = (
    "CN = backend.internal\n"
    "error 18 at 0 depth lookup: self-signed certificate\n"
    "error stdin: verification failed\n"
)

OCSP_STAPLED = """OCSP response:
======================================
OCSP Response Data:
    OCSP Response Status: successful (0x0)
    Response Type: Basic OCSP Response
======================================
"""


def _session(pem: str, ocsp: str = "OCSP response: no response sent\n", alpn: str = "") -> str:
    return (
        "CONNECTED(00000003)\n"
        "---\nCertificate chain\n 0 s:CN = backend.internal\n"
        f"{pem}"
        "---\n"
        f"{ocsp}"
        "New, TLSv1.3, Cipher is TLS_AES_256_GCM_SHA384\n"
        f"{alpn}"
        "SSL-Session:\n    Protocol  : TLSv1.3\n    Cipher    : TLS_AES_256_GCM_SHA384\n"
        "    Verify return code: 18 (self-signed certificate)\n"
    )


def _target(host: str = "backend.internal", port: int = 8443) -> ResolvedTarget:
    return ResolvedTarget(
        scheme="https",
        host=host,
        port=port,
        origin=Candidate(CandidateKind.PROXY, f"https://{host}:{port}"),
        tls=TLSDetection.DECLARED,
    )


def test_inspect_collects_session_chain_and_verify(self_signed_pem):
    ssh = FakeConnector(
        {
            "-showcerts -status": _session(self_signed_pem),
            "-alpn h2": "CONNECTED(00000003)\nALPN protocol: h2\n",
            "openssl verify": VERIFY_OUT,
        }
    )
    info = TLSStatusScanner(ssh, CAPS).inspect(_target(), "10.0.0.5", ProbeBudget(15), TLSDetection.DECLARED)

    assert (info.protocol, info.cipher) == ("TLSv1.3", "TLS_AES_256_GCM_SHA384")
    assert (info.alpn, info.alpn_forced) == ("h2", "h2")
    assert info.verify_result == "18 (self-signed certificate)"
    assert info.ocsp_present is False
    [cert] = info.cert_chain
    assert cert.subject == "CN=backend.internal" and cert.issuer == "CN=backend.internal"
    assert cert.not_after.endswith(" UTC")
    assert cert.verify_result.startswith("CN = backend.internal | error 18")
    assert cert.saved_path is None
    assert ssh.ran("-connect 10.0.0.5:8443 -servername backend.internal")


def test_negotiated_alpn_skips_forced_offers(self_signed_pem):
    ssh = FakeConnector({"-showcerts": _session(self_signed_pem, alpn="ALPN protocol: http/1.1\n")})
    info = TLSStatusScanner(ssh, CAPS).inspect(_target(), "10.0.0.5", ProbeBudget(15), TLSDetection.DECLARED)
    assert (info.alpn, info.alpn_forced) == ("http/1.1", None)
    assert not ssh.ran("-alpn")


def test_stapled_ocsp_is_reported(self_signed_pem):
    ssh = FakeConnector({"-showcerts": _session(self_signed_pem, ocsp=OCSP_STAPLED)})
    info = TLSStatusScanner(ssh, CAPS).inspect(_target(), "10.0.0.5", ProbeBudget(15), TLSDetection.PROBED)
    assert info.ocsp_present is True
    assert info.ocsp_excerpt[:2] == ["OCSP Response Data:", "OCSP Response Status: successful (0x0)"]


def test_saved_chain_lands_in_save_dir(self_signed_pem, tmp_path):
    ssh = FakeConnector({"-showcerts": _session(self_signed_pem)})
    scanner = TLSStatusScanner(ssh, ProbeCapabilities(tools={"openssl", "timeout"}), save_dir=tmp_path / "dump")
    info = scanner.inspect(_target(), "10.0.0.5", ProbeBudget(15), TLSDetection.DECLARED)

    [saved] = list((tmp_path / "dump").iterdir())
    assert saved.name.startswith("sslchain_backend.internal_8443_")
    assert saved.name.endswith("_0.pem")
    assert "BEGIN CERTIFICATE" in saved.read_text()
    assert info.cert_chain[0].saved_path == str(saved)
    assert info.cert_chain[0].verify_result is None


def test_no_certificate_and_failed_handshake():
    ssh = FakeConnector({"-showcerts": "CONNECTED(00000003)\nno peer certificate available\n"})
    info = TLSStatusScanner(ssh, CAPS).inspect(_target(), "10.0.0.5", ProbeBudget(15), TLSDetection.PROBED)
    assert info.notes == ["tls-no-cert"]
    assert info.verify_result == "(no certs presented)"

    failed = TLSStatusScanner(FakeConnector(), CAPS).inspect(_target(), "10.0.0.5", ProbeBudget(15), TLSDetection.DECLARED)
    assert failed.notes == ["handshake-failed"]


def test_detect_tries_sni_then_without(self_signed_pem):
    ssh = FakeConnector({"openssl s_client": "CONNECTED(00000003)\n"})
    assert TLSStatusScanner(ssh, CAPS).detect(_target(), "10.0.0.5", ProbeBudget(15)) is False
    assert len(ssh.commands) == 2
    assert "-servername" in ssh.commands[0] and "-servername" not in ssh.commands[1]

    ssh = FakeConnector({"openssl s_client": _session(self_signed_pem)})
    assert TLSStatusScanner(ssh, CAPS).detect(_target("10.0.0.5"), "10.0.0.5", ProbeBudget(15)) is True
    assert len(ssh.commands) == 1


def test_workspace_cleans_up(self_signed_pem):
    with CertChainWorkspace("h", 1) as workspace:
        pem_path = workspace.add(0, self_signed_pem)
        assert pem_path.exists()
        assert workspace.keep(pem_path) is None
    assert not pem_path.exists()
    with pytest.raises(RuntimeError):
        workspace.path


def test_same_endpoint_chains_do_not_overwrite(self_signed_pem, tmp_path):
    saved = []
    with CertChainWorkspace("10.0.0.1", 443, tmp_path) as first, CertChainWorkspace("10.0.0.1", 443, tmp_path) as second:
        first.stamp = second.stamp
        saved.append(first.keep(first.add(0, self_signed_pem)))
        saved.append(second.keep(second.add(0, self_signed_pem)))

    assert saved[0] != saved[1]
    assert sorted(p.name for p in tmp_path.iterdir()) == sorted(p.name for p in saved)


@pytest.mark.parametrize("host,expected", [("10.0.0.1", True), ("[::1]", True), ("example.com", False)])
def test_is_ip_literal(host, expected):
    assert is_ip_literal(host) is expected
