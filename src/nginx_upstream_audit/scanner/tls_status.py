"""TLS Status Scanner - live TLS inspection of backend targets using openssl s_client.

Handshakes run on the audited host. The presented chain is parsed locally
with `cryptography`; per-certificate verification runs remotely with
`openssl verify` against the host's own CA bundle.
"""

from __future__ import annotations

import datetime
import ipaddress
import logging
import re
import shlex
import shutil
import tempfile
import uuid
from pathlib import Path

from cryptography import x509

from nginx_upstream_audit.connector import Connector
from nginx_upstream_audit.model.upstream import (
    CertificateInfo,
    ProbeCapabilities,
    ResolvedTarget,
    TLSDetection,
    TLSInfo,
)
from nginx_upstream_audit.scanner.budget import ProbeBudget

logger = logging.getLogger(__name__)

PEM_RE = re.compile(r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----", re.DOTALL)
ALPN_RE = re.compile(r"^ALPN protocol:\s*(\S+)", re.MULTILINE)
NEW_SESSION_RE = re.compile(r"^New,\s*(\S+),\s*Cipher is\s*(\S+)", re.MULTILINE)
PROTOCOL_RE = re.compile(r"^\s*Protocol\s*:\s*(\S+)", re.MULTILINE)
CIPHER_RE = re.compile(r"^\s*Cipher\s*:\s*(\S+)", re.MULTILINE)
VERIFY_RE = re.compile(r"Verify return code:\s*(.+)$", re.MULTILINE)

ALPN_OFFERS = ("h2", "http/1.1")
TIME_FMT = "%Y-%m-%d %H:%M:%S UTC"


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def connect_address(ip: str, port: int) -> str:
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def safe_name(host: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", host) or "host"


class CertChainWorkspace:
    """Scoped directory for the PEMs of one handshake.

    Everything left inside is removed on exit; certificates that should
    survive are moved out with `keep()` first.
    """

    def __init__(self, host: str, port: int, save_dir: Path | None = None) -> None:
        self.host = host
        self.port = port
        self.save_dir = Path(save_dir) if save_dir else None
        self.stamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        # Distinguishes concurrent handshakes against the same endpoint.
        self.token = uuid.uuid4().hex[:8]
        self._tmp: tempfile.TemporaryDirectory | None = None

    def __enter__(self) -> "CertChainWorkspace":
        self._tmp = tempfile.TemporaryDirectory(prefix="sslchain_")
        return self

    def __exit__(self, *args: object) -> None:
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None

    @property
    def path(self) -> Path:
        if self._tmp is None:
            raise RuntimeError("workspace used outside its 'with' block")
        return Path(self._tmp.name)

    def file_name(self, index: int) -> str:
        return f"sslchain_{safe_name(self.host)}_{self.port}_{self.stamp}_{self.token}_{index}.pem"

    def add(self, index: int, pem: str) -> Path:
        dest = self.path / self.file_name(index)
        dest.write_text(pem.strip() + "\n", encoding="ascii", errors="replace")
        return dest

    def keep(self, pem_path: Path) -> Path | None:
        """Move a PEM to the save directory (no-op without one)."""
        if self.save_dir is None:
            return None
        self.save_dir.mkdir(parents=True, exist_ok=True)
        dest = self.save_dir / pem_path.name
        shutil.move(str(pem_path), str(dest))
        return dest


class TLSStatusScanner:
    """Collects TLS metadata from a live handshake against one target."""

    def __init__(
        self,
        ssh: Connector,
        capabilities: ProbeCapabilities,
        save_dir: Path | None = None,
        detect_timeout: float = 3,
        handshake_timeout: float = 6,
    ) -> None:
        self.ssh = ssh
        self.capabilities = capabilities
        self.save_dir = save_dir
        self.detect_timeout = detect_timeout
        self.handshake_timeout = handshake_timeout

    def detect(self, target: ResolvedTarget, ip: str, budget: ProbeBudget) -> bool:
        """Short handshake used to find TLS on ports not declared as TLS."""
        for sni in self._sni_options(target.host):
            out = self.handshake(ip, target.port, sni, "", budget.step(self.detect_timeout))
            if out and PEM_RE.search(out):
                return True
        return False

    def inspect(self, target: ResolvedTarget, ip: str, budget: ProbeBudget, detection: TLSDetection) -> TLSInfo:
        info = TLSInfo(detection=detection)
        sni = target.host if target.host and not is_ip_literal(target.host) else None

        out = self.handshake(ip, target.port, sni, "-showcerts -status", budget.step(self.handshake_timeout))
        if out is None:
            info.notes.append("handshake-failed")
            return info

        self._parse_session(out, info)
        if info.alpn is None:
            for offer in ALPN_OFFERS:
                forced = self.handshake(
                    ip, target.port, sni, f"-alpn {offer}", budget.step(self.detect_timeout)
                )
                m = ALPN_RE.search(forced or "")
                if m:
                    info.alpn = m.group(1)
                    info.alpn_forced = offer
                    break

        pems = PEM_RE.findall(out)
        if not pems:
            info.notes.append("tls-no-cert")
            info.verify_result = info.verify_result or "(no certs presented)"
            return info

        with CertChainWorkspace(target.host or ip, target.port, self.save_dir) as workspace:
            for index, pem in enumerate(pems):
                pem_path = workspace.add(index, pem)
                cert = self._describe(index, pem)
                cert.verify_result = self._verify(pem, budget)
                saved = workspace.keep(pem_path)
                if saved is not None:
                    cert.saved_path = str(saved)
                info.cert_chain.append(cert)
        return info

    def _sni_options(self, host: str) -> list[str | None]:
        if host and not is_ip_literal(host):
            return [host, None]
        return [None]

    def handshake(self, ip: str, port: int, sni: str | None, extra: str, timeout: float | None) -> str | None:
        if timeout is None:
            return None
        t = max(1, int(timeout))
        servername = f" -servername {shlex.quote(sni)}" if sni else ""
        cmd = (
            f"echo | timeout {t} openssl s_client -connect {shlex.quote(connect_address(ip, port))}"
            f"{servername} {extra} 2>&1"
        )
        res = self.ssh.run(cmd, timeout=t + 2)
        out = res.stdout or ""
        if "CONNECTED" not in out:
            return None
        return out

    @staticmethod
    def _parse_session(out: str, info: TLSInfo) -> None:
        m = ALPN_RE.search(out)
        if m:
            info.alpn = m.group(1)
        m = NEW_SESSION_RE.search(out)
        if m:
            info.protocol, info.cipher = m.group(1), m.group(2)
        if not info.protocol:
            m = PROTOCOL_RE.search(out)
            info.protocol = m.group(1) if m else None
        if not info.cipher or info.cipher == "(NONE)":
            m = CIPHER_RE.search(out)
            info.cipher = m.group(1) if m else info.cipher
        verify = VERIFY_RE.findall(out)
        if verify:
            info.verify_result = verify[-1].strip()

        # "OCSP response: no response sent" means the server did not staple.
        lines = out.splitlines()
        for i, line in enumerate(lines):
            if line.startswith("OCSP response:"):
                if "no response sent" in line:
                    break
                info.ocsp_present = True
                excerpt = [l.strip() for l in lines[i + 1 : i + 8] if l.strip() and not l.startswith("====")]
                info.ocsp_excerpt = excerpt[:5]
                break

    @staticmethod
    def _describe(index: int, pem: str) -> CertificateInfo:
        cert_info = CertificateInfo(index=index)
        try:
            cert = x509.load_pem_x509_certificate(pem.encode("ascii", errors="replace"))
        except ValueError as e:
            logger.debug("unparseable certificate #%d: %s", index, e)
            cert_info.subject = "(unparseable)"
            return cert_info
        cert_info.subject = cert.subject.rfc4514_string()
        cert_info.issuer = cert.issuer.rfc4514_string()
        cert_info.not_before = cert.not_valid_before_utc.strftime(TIME_FMT)
        cert_info.not_after = cert.not_valid_after_utc.strftime(TIME_FMT)
        return cert_info

    def _verify(self, pem: str, budget: ProbeBudget) -> str | None:
        ca = self.capabilities.ca_bundle
        if not ca:
            return None
        timeout = budget.step(5)
        if timeout is None:
            return None
        t = max(1, int(timeout))
        cmd = f"printf '%s\\n' {shlex.quote(pem)} | timeout {t} openssl verify -CAfile {shlex.quote(ca)} 2>&1"
        res = self.ssh.run(cmd, timeout=t + 2)
        lines = [l.strip() for l in (res.stdout or "").splitlines() if l.strip()]
        if not lines:
            return None
        return " | ".join(lines[:3])
