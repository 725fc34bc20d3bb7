"""Plain Text Reporter - the block-per-target audit report."""

from __future__ import annotations

import datetime
from pathlib import Path

from nginx_upstream_audit import __version__
from nginx_upstream_audit.actions.reporters.base import BaseReporter
from nginx_upstream_audit.model.upstream import (
    AuditResult,
    CandidatePlan,
    ProbeResult,
    ProbeStatus,
    ResolutionStatus,
    ResolvedTarget,
    TLSDetection,
    TLSInfo,
    Unresolved,
)

REPORT_FILE = "upstream_health.txt"


def target_line(target: ResolvedTarget) -> str:
    if target.is_unix:
        where = target.endpoint
    elif target.host:
        where = target.endpoint
    else:
        where = target.resolved_text or "?"
    return f"TARGET: {target.origin.label} -> {where} (proto={target.scheme})"


class PlainReporter(BaseReporter):
    """Generates clean, text-only output; also the on-disk report format."""

    def report_results(self, audit: AuditResult) -> int:
        self.console.print(self.render(audit), markup=False, highlight=False, soft_wrap=True)
        return 1 if audit.down_count else 0

    def report_plans(self, plans: list[CandidatePlan]) -> None:
        for plan in plans:
            resolution = plan.resolution
            self.console.print(f"CANDIDATE: {plan.candidate.label}", markup=False, highlight=False)
            if isinstance(resolution, Unresolved):
                self.console.print(
                    f"  UNRESOLVED: {resolution.text} (missing: {', '.join(resolution.variables)})",
                    markup=False,
                    highlight=False,
                )
            else:
                self.console.print(f"  RESOLVED: {resolution.text}", markup=False, highlight=False)
            for target in plan.targets:
                self.console.print(
                    f"  -> {target.endpoint if target.probeable else 'templated'} "
                    f"(proto={target.scheme}, {target.status.value})",
                    markup=False,
                    highlight=False,
                )

    def write(self, audit: AuditResult, output_dir: Path) -> Path:
        """Write the report file and record its path on the audit."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / REPORT_FILE
        audit.report_path = str(path)
        path.write_text(self.render(audit), encoding="utf-8")
        return path

    def render(self, audit: AuditResult) -> str:
        lines = [
            f"# nginx-upstream-audit {__version__}",
            f"# generated: {datetime.datetime.now().isoformat(timespec='seconds')}",
            f"# dump: {audit.dump_source or 'n/a'}",
        ]
        if audit.nginx_version:
            lines.append(f"# nginx: {audit.nginx_version}")
        if audit.auto_vars_path:
            lines.append(f"# auto-vars: {audit.auto_vars_path}")
        for limitation in audit.capabilities.limitations():
            lines.append(f"# limitation: {limitation}")
        for note in audit.notes:
            lines.append(f"# note: {note}")
        lines.append("")

        for result in audit.results:
            lines.extend(self.render_result(result))
            lines.append("")

        up = sum(1 for r in audit.results if r.status is ProbeStatus.UP)
        skipped = sum(1 for r in audit.results if r.status is ProbeStatus.SKIPPED)
        lines.append(
            f"SUMMARY: {len(audit.results)} targets, {up} up, {audit.down_count} down, {skipped} skipped"
        )
        return "\n".join(lines) + "\n"

    def render_result(self, result: ProbeResult) -> list[str]:
        target = result.target
        lines = [target_line(target), f"  STATUS: {result.status.value} ({result.reason})"]

        if target.status is ResolutionStatus.TEMPLATED:
            lines.append(f"  UNRESOLVED: {', '.join('$' + v for v in target.unresolved) or target.resolved_text}")
        elif target.resolved_text and target.resolved_text != target.origin.raw_text:
            lines.append(f"  RESOLVED: {target.resolved_text}")
        if target.heuristic:
            lines.append("  RESOLUTION: heuristic (positional guess, lower confidence)")
        if target.upstream_name and target.upstream_server:
            lines.append(f"  UPSTREAM: {target.upstream_name} server={target.upstream_server}")
        if result.address and result.address != target.host:
            lines.append(f"  ADDRESS: {result.address}")

        if result.tls is not None:
            lines.extend(self._tls_lines(result.tls))
        elif target.tls is TLSDetection.DECLARED and "tls" in result.unavailable:
            lines.append("  TLS: declared (unavailable)")

        if result.http_status_line:
            lines.append(f"  HTTP: {result.http_status_line}")
            lines.extend(f"    {h}" for h in result.http_headers)

        for key, value in result.protocol_specific.items():
            lines.append(f"  {key}: {value}")

        if result.listener is not None:
            listener = result.listener
            lines.append("  LISTENERS:")
            lines.extend(f"    {l}" for l in listener.lines)
            if listener.pid is not None or listener.process_name:
                lines.append(f"    PID/PROCESS: {listener.pid if listener.pid is not None else '?'}/{listener.process_name or '?'}")
            if listener.owner:
                lines.append(f"    LISTENER_OWNER: {listener.owner}")
            if listener.likely_backend:
                lines.append(f"    LIKELY_BACKEND: {listener.likely_backend}")
        return lines

    @staticmethod
    def _tls_lines(tls: TLSInfo) -> list[str]:
        lines = [f"  TLS: {tls.detection.value}"]
        if tls.alpn:
            forced = f" (offered {tls.alpn_forced})" if tls.alpn_forced else ""
            lines.append(f"  ALPN: {tls.alpn}{forced}")
        else:
            lines.append("  ALPN: none negotiated")
        if tls.protocol or tls.cipher:
            lines.append(f"  CIPHER: {tls.cipher or '?'} ({tls.protocol or '?'})")
        lines.append(f"  OCSP: {'present' if tls.ocsp_present else 'not stapled'}")
        lines.extend(f"    {l}" for l in tls.ocsp_excerpt)
        if tls.verify_result:
            lines.append(f"  TLS_VERIFY: {tls.verify_result}")
        for cert in tls.cert_chain:
            lines.append(f"  CERT[{cert.index}]: {cert.subject}")
            lines.append(f"    ISSUER: {cert.issuer}")
            if cert.not_before or cert.not_after:
                lines.append(f"    VALIDITY: {cert.not_before} -> {cert.not_after}")
            if cert.verify_result:
                lines.append(f"    VERIFY: {cert.verify_result}")
            if cert.saved_path:
                lines.append(f"    SAVED_CHAIN: {cert.saved_path}")
        for note in tls.notes:
            lines.append(f"  STATUS_NOTE: {note}")
        return lines
