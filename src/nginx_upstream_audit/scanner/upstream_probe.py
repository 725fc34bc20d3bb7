"""Upstream Probe Scanner - layered active probes for backend truth.

Layers per target: DNS, TCP connect, TLS, HTTP HEAD, then memcached or gRPC
specific probes. Each layer is best-effort: a failing or timed-out layer
leaves its field empty and the next one runs. Only a failed TCP connect
stops the sequence.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import shlex
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, TypeVar

from nginx_upstream_audit.config import ProbeSettings
from nginx_upstream_audit.connector import Connector
from nginx_upstream_audit.model.upstream import (
    CandidateKind,
    ProbeCapabilities,
    ProbeResult,
    ProbeStatus,
    ResolvedTarget,
    TLSDetection,
)
from nginx_upstream_audit.scanner.budget import ProbeBudget
from nginx_upstream_audit.scanner.network_surface import ListenerCorrelator
from nginx_upstream_audit.scanner.tls_status import TLSStatusScanner, is_ip_literal

logger = logging.getLogger(__name__)

T = TypeVar("T")

SAFE_HOST_RE = re.compile(r"^[A-Za-z0-9._:%\-]+$")
IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
HEADER_KEEP = ("server:", "content-encoding:")

MEMCACHED_VERSION = "version\\r\\n"
# 24-byte binary-protocol request header: magic 0x80, opcode 0x0a (NOOP), rest zero.
MEMCACHED_NOOP = "\\200\\012" + "\\000" * 22
HTTP2_PREFACE = "PRI * HTTP/2.0\\r\\n\\r\\nSM\\r\\n\\r\\n"


class UpstreamProbeScanner:
    """Probes resolved targets; safe to share across worker threads."""

    def __init__(
        self,
        ssh: Connector,
        capabilities: ProbeCapabilities,
        settings: ProbeSettings | None = None,
        tls: TLSStatusScanner | None = None,
        correlator: ListenerCorrelator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ssh = ssh
        self.capabilities = capabilities
        self.settings = settings or ProbeSettings()
        self.tls = tls or TLSStatusScanner(
            ssh,
            capabilities,
            detect_timeout=self.settings.connect_timeout,
            handshake_timeout=self.settings.tls_timeout,
        )
        self.correlator = correlator
        self.clock = clock

    def scan(self, targets: Iterable[ResolvedTarget], workers: int | None = None) -> list[ProbeResult]:
        """Probe all targets with a bounded pool; results keep input order."""
        targets = list(targets)
        if not targets:
            return []
        workers = max(1, min(workers or self.settings.workers, len(targets)))
        if self.correlator is not None:
            # Load the listening table before the pool so workers only read it.
            self.correlator.scan()
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as pool:
            return list(pool.map(self.probe, targets))

    def probe(self, target: ResolvedTarget) -> ProbeResult:
        if not target.probeable:
            return ProbeResult(target=target, status=ProbeStatus.SKIPPED, reason="templated")

        budget = ProbeBudget(self.settings.target_budget, clock=self.clock)
        if target.is_unix:
            result = self._probe_unix(target, budget)
        elif not SAFE_HOST_RE.match(target.host):
            return ProbeResult(target=target, status=ProbeStatus.SKIPPED, reason="invalid-host")
        else:
            result = self._probe_network(target, budget)

        if result.status is ProbeStatus.UP and self.correlator is not None:
            result.listener = self._step("listeners", lambda: self.correlator.correlate(target))
        logger.debug("%s -> %s (%s)", target.endpoint, result.status.value, result.reason)
        return result

    # -- unix sockets -----------------------------------------------------

    def _probe_unix(self, target: ResolvedTarget, budget: ProbeBudget) -> ProbeResult:
        path = shlex.quote(target.socket_path or "")
        res = self.ssh.run(f"if test -S {path} || test -e {path}; then echo SOCK_OK; else echo SOCK_MISSING; fi")
        if "SOCK_OK" not in (res.stdout or ""):
            return ProbeResult(target=target, status=ProbeStatus.DOWN, reason="socket missing")

        result = ProbeResult(target=target, status=ProbeStatus.UP, reason="socket exists", tcp_up=True)
        # fastcgi/uwsgi/scgi sockets do not speak HTTP.
        if self.capabilities.has("curl") and target.origin.kind in (CandidateKind.PROXY, CandidateKind.UNIX, CandidateKind.URL):
            timeout = budget.step(self.settings.http_timeout)
            if timeout is not None:
                cmd = f"curl -sS -I --max-time {int(timeout)} --unix-socket {path} http://localhost/ 2>/dev/null"
                self._apply_http(result, self._step("http", lambda: self.ssh.run(cmd, timeout=timeout + 2).stdout))
        return result

    # -- tcp targets ------------------------------------------------------

    def _probe_network(self, target: ResolvedTarget, budget: ProbeBudget) -> ProbeResult:
        ip = self._resolve_ip(target.host, budget)
        result = ProbeResult(target=target, status=ProbeStatus.DOWN, reason="connect-failed", address=ip)

        if not self.capabilities.can_connect:
            result.unavailable.append("tcp")
            result.status, result.reason = ProbeStatus.SKIPPED, "no-connect-tool"
            return result
        if not self._tcp_probe(ip, target.port, budget):
            return result
        result.tcp_up = True
        result.status, result.reason = ProbeStatus.UP, "tcp connect"

        tls_detection = target.tls
        if self.capabilities.can_tls:
            if tls_detection is TLSDetection.NONE and self._step(
                "tls-detect", lambda: self.tls.detect(target, ip, budget)
            ):
                tls_detection = TLSDetection.PROBED
            if tls_detection is not TLSDetection.NONE:
                result.tls = self._step("tls", lambda: self.tls.inspect(target, ip, budget, tls_detection))
        elif tls_detection is TLSDetection.DECLARED:
            result.unavailable.append("tls")
        if tls_detection is not target.tls:
            result.target = dataclasses.replace(target, tls=tls_detection)

        use_tls = tls_detection is not TLSDetection.NONE
        if self.capabilities.can_http:
            self._apply_http(result, self._step("http", lambda: self._http_probe(target, ip, use_tls, budget)))
        else:
            result.unavailable.append("http")

        kind = target.origin.kind
        if kind is CandidateKind.MEMCACHED or target.scheme == "memcached":
            self._memcached_probe(result, ip, target.port, budget)
        elif kind is CandidateKind.GRPC or target.scheme in ("grpc", "grpcs"):
            self._grpc_probe(result, target, ip, use_tls, budget)
        return result

    def _resolve_ip(self, host: str, budget: ProbeBudget) -> str:
        if is_ip_literal(host) or not self.capabilities.has("getent"):
            return host.strip("[]")
        timeout = budget.step(self.settings.connect_timeout)
        if timeout is None:
            return host
        res = self.ssh.run(
            f"getent ahostsv4 {shlex.quote(host)} 2>/dev/null | awk '{{print $1; exit}}'",
            timeout=timeout + 2,
        )
        ip = (res.stdout or "").strip()
        if IPV4_RE.match(ip):
            return ip
        logger.debug("getent found no IPv4 for %s, connecting to the name", host)
        return host

    def _tcp_probe(self, ip: str, port: int, budget: ProbeBudget) -> bool:
        timeout = budget.step(self.settings.connect_timeout)
        if timeout is None:
            return False
        t = max(1, int(timeout))
        if self.capabilities.has("bash") and self.capabilities.has("timeout"):
            cmd = (
                f"timeout {t} bash -c '</dev/tcp/$0/$1' {shlex.quote(ip)} {port} >/dev/null 2>&1 "
                "&& echo TCP_OK || echo TCP_FAIL"
            )
        else:
            cmd = f"nc -z -w {t} {shlex.quote(ip)} {port} >/dev/null 2>&1 && echo TCP_OK || echo TCP_FAIL"
        res = self.ssh.run(cmd, timeout=t + 2)
        return "TCP_OK" in (res.stdout or "")

    def _http_probe(self, target: ResolvedTarget, ip: str, use_tls: bool, budget: ProbeBudget) -> str | None:
        timeout = budget.step(self.settings.http_timeout)
        if timeout is None:
            return None
        t = max(1, int(timeout))
        host = target.host
        bracket = f"[{ip}]" if ":" in ip else ip
        if self.capabilities.has("curl"):
            if use_tls:
                if is_ip_literal(host) or host == ip:
                    url = f"https://{bracket}:{target.port}/"
                    extra = ""
                else:
                    url = f"https://{host}:{target.port}/"
                    extra = f" --resolve {shlex.quote(f'{host}:{target.port}:{ip}')}"
                cmd = f"curl -sS -k -I --max-time {t}{extra} {shlex.quote(url)} 2>/dev/null"
            else:
                url = f"http://{bracket}:{target.port}/"
                cmd = f"curl -sS -I --max-time {t} -H {shlex.quote('Host: ' + host)} {shlex.quote(url)} 2>/dev/null"
            return self.ssh.run(cmd, timeout=t + 2).stdout
        if use_tls or not self.capabilities.can_raw:
            return None
        request = f"HEAD / HTTP/1.0\\r\\nHost: {host}\\r\\n\\r\\n"
        cmd = f"printf {shlex.quote(request)} | timeout {t} nc -w 2 {shlex.quote(ip)} {target.port} 2>/dev/null"
        return self.ssh.run(cmd, timeout=t + 2).stdout

    @staticmethod
    def _apply_http(result: ProbeResult, output: str | None) -> None:
        if not output:
            return
        for raw in output.splitlines():
            line = raw.strip()
            if not line:
                continue
            if line.startswith("HTTP/"):
                if result.http_status_line is None:
                    result.http_status_line = line
            elif line.lower().startswith(HEADER_KEEP) and line not in result.http_headers:
                result.http_headers.append(line)

    # -- protocol specific -----------------------------------------------

    def _memcached_probe(self, result: ProbeResult, ip: str, port: int, budget: ProbeBudget) -> None:
        if not self.capabilities.can_raw:
            result.unavailable.append("memcached")
            return
        text = self._step("memcached-text", lambda: self._raw_exchange(ip, port, MEMCACHED_VERSION, budget, hex_out=False))
        if text:
            lines = [l.strip() for l in text.splitlines() if l.strip()]
            result.protocol_specific["MEMCACHED-TXT"] = " ".join(lines[:4])
            return
        if not self.capabilities.has("od"):
            return
        reply = self._step("memcached-bin", lambda: self._raw_exchange(ip, port, MEMCACHED_NOOP, budget, hex_out=True))
        if reply:
            result.protocol_specific["MEMCACHED-BIN"] = reply

    def _grpc_probe(self, result: ProbeResult, target: ResolvedTarget, ip: str, use_tls: bool, budget: ProbeBudget) -> None:
        caps = self.capabilities
        if caps.curl_http2_prior_knowledge and not use_tls:
            def prior() -> str | None:
                timeout = budget.step(self.settings.protocol_timeout)
                if timeout is None:
                    return None
                bracket = f"[{ip}]" if ":" in ip else ip
                url = f"http://{bracket}:{target.port}/"
                res = self.ssh.run(
                    f"curl -sS -I --http2-prior-knowledge --max-time {int(timeout)} {shlex.quote(url)} 2>/dev/null",
                    timeout=timeout + 2,
                )
                lines = [l.strip() for l in (res.stdout or "").splitlines() if l.strip()]
                return lines[0] if lines else None

            status = self._step("grpc-prior", prior)
            if status:
                result.protocol_specific["GRPC_HTTP2_PRIOR"] = status

        if caps.can_tls:
            if result.tls is not None and result.tls.alpn == "h2":
                result.protocol_specific["GRPC_ALPN_H2"] = "h2 (grpc candidate)"
            elif use_tls:
                def alpn_h2() -> str | None:
                    out = self.tls.handshake(
                        ip, target.port, None, "-alpn h2", budget.step(self.settings.protocol_timeout)
                    )
                    return "h2 (grpc candidate)" if out and "ALPN protocol: h2" in out else None

                alpn = self._step("grpc-alpn", alpn_h2)
                if alpn:
                    result.protocol_specific["GRPC_ALPN_H2"] = alpn

        if caps.can_raw and not use_tls:
            reply = self._step(
                "grpc-preface",
                lambda: self._raw_exchange(ip, target.port, HTTP2_PREFACE, budget, hex_out=caps.has("od")),
            )
            if reply:
                result.protocol_specific["GRPC_PREFACE_RESP"] = reply

    def _raw_exchange(self, ip: str, port: int, payload: str, budget: ProbeBudget, hex_out: bool) -> str | None:
        """Send a printf-escaped payload with nc and return the reply (hex when asked)."""
        timeout = budget.step(self.settings.protocol_timeout)
        if timeout is None:
            return None
        t = max(1, int(timeout))
        cmd = f"(printf {shlex.quote(payload)}; sleep 0.2) | timeout {t} nc -w 2 {shlex.quote(ip)} {port} 2>/dev/null"
        if hex_out:
            cmd += " | od -An -tx1 | tr -d ' \\n' | cut -c1-64"
        out = (self.ssh.run(cmd, timeout=t + 2).stdout or "").strip()
        return out or None

    @staticmethod
    def _step(name: str, fn: Callable[[], T]) -> T | None:
        try:
            return fn()
        except Exception as e:
            logger.debug("probe step %s failed: %s", name, e)
            return None

