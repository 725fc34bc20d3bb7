"""Shared extract + probe pipeline.

Public API:
    collect_dump(ssh, dump_file) -> CollectorResult
    load_remembered(settings) -> list of remembered KEY=VALUE bindings
    plan_targets(dump, ...) -> (ParsedConfig, BindingStore, list[CandidatePlan])
    run_upstream_audit(ssh, dump, ...) -> AuditResult
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterable

from nginx_upstream_audit.config import ProbeSettings
from nginx_upstream_audit.connector import Connector
from nginx_upstream_audit.engine.bindings import BindingStore, build_binding_store, load_assignments
from nginx_upstream_audit.engine.normalizer import TargetNormalizer
from nginx_upstream_audit.engine.resolver import VariableResolver
from nginx_upstream_audit.model.upstream import AuditResult, CandidateKind, CandidatePlan, ResolvedTarget
from nginx_upstream_audit.parser.nginx_conf import DirectiveExtractor, ParsedConfig
from nginx_upstream_audit.scanner.capabilities import CapabilityScanner
from nginx_upstream_audit.scanner.network_surface import ListenerCorrelator
from nginx_upstream_audit.scanner.nginx_collector import CollectorResult, NginxCollector
from nginx_upstream_audit.scanner.tls_status import TLSStatusScanner
from nginx_upstream_audit.scanner.upstream_probe import UpstreamProbeScanner

logger = logging.getLogger(__name__)


def collect_dump(ssh: Connector, dump_file: Path | None = None) -> CollectorResult:
    """Read the dump from a file, or collect it from the audited host.

    Raises:
        FileNotFoundError: if `dump_file` is given but does not exist.
    """
    if dump_file is not None:
        path = Path(dump_file)
        if not path.is_file():
            raise FileNotFoundError(f"Dump file not found: {path}")
        return CollectorResult(
            mode="FILE",
            source=str(path),
            config_dump=path.read_text(encoding="utf-8", errors="replace"),
        )
    return NginxCollector(ssh).collect()


def load_remembered(settings: ProbeSettings) -> list[tuple[str, str]]:
    """Bindings persisted by the previous run, when reuse is enabled."""
    if settings.auto_apply and settings.auto_vars_path.is_file():
        return load_assignments(settings.auto_vars_path)
    return []


def plan_targets(
    dump: str,
    *,
    overrides: Iterable[tuple[str, str]] = (),
    remembered: Iterable[tuple[str, str]] = (),
    allow_positional: bool = True,
) -> tuple[ParsedConfig, BindingStore, list[CandidatePlan]]:
    """Extract, resolve and normalize every candidate of a dump.

    Upstream server lines already covered by a directive that expands the
    same upstream are dropped, so each backend is probed once.
    """
    parsed = DirectiveExtractor().parse(dump)
    store = build_binding_store(parsed, overrides=overrides, remembered=remembered)
    resolver = VariableResolver(store, allow_positional=allow_positional)
    normalizer = TargetNormalizer(store)

    plans: list[CandidatePlan] = []
    expanded: set[str] = set()
    for candidate in parsed.candidates:
        if candidate.kind is CandidateKind.UPSTREAM_SERVER and candidate.source_upstream in expanded:
            continue
        resolution = resolver.resolve(candidate.raw_text)
        plan = CandidatePlan(candidate=candidate, resolution=resolution)
        for target in normalizer.normalize(candidate, resolution):
            if target.upstream_server and target.upstream_name:
                expanded.add(target.upstream_name)
            plan.targets.append(target)
        plans.append(plan)
    return parsed, store, plans


def run_upstream_audit(
    ssh: Connector,
    dump: str,
    *,
    settings: ProbeSettings | None = None,
    overrides: Iterable[tuple[str, str]] = (),
    dump_source: str = "",
    nginx_version: str = "",
    log_fn: Callable[[str], None] | None = None,
) -> AuditResult:
    """Run the full audit over one dump.

    Args:
        ssh: Connector for the host the backends are probed from.
        dump: Flattened nginx configuration text.
        settings: Probe settings (defaults when omitted).
        overrides: Operator KEY=VALUE bindings, highest precedence.
        dump_source: Where the dump came from, for the report header.
        nginx_version: Version reported by `nginx -v`, when collected.
        log_fn: Optional progress callback.

    Returns:
        AuditResult with one ProbeResult per target, in plan order.
    """
    settings = settings or ProbeSettings()

    def _log(msg: str) -> None:
        logger.info(msg)
        if log_fn:
            log_fn(msg)

    audit = AuditResult(dump_source=dump_source, nginx_version=nginx_version)
    if not dump.strip():
        audit.notes.append("empty configuration dump; no upstream checks performed")
        return audit

    overrides = list(overrides)
    remembered = load_remembered(settings)
    if remembered:
        _log(f"Reusing {len(remembered)} remembered bindings from {settings.auto_vars_path}")

    _log("Extracting backend candidates...")
    parsed, store, plans = plan_targets(
        dump,
        overrides=overrides,
        remembered=remembered,
        allow_positional=settings.positional,
    )
    audit.candidates = list(parsed.candidates)
    if store.bindings():
        audit.auto_vars_path = str(store.persist(settings.auto_vars_path))

    targets: list[ResolvedTarget] = [t for plan in plans for t in plan.targets]
    _log(f"Resolved {len(audit.candidates)} candidates into {len(targets)} targets")
    if not targets:
        audit.notes.append("no backend candidates found")
        return audit

    _log("Detecting probe tools...")
    capabilities = CapabilityScanner(ssh).scan()
    audit.capabilities = capabilities

    tls = TLSStatusScanner(
        ssh,
        capabilities,
        save_dir=settings.dump_dir if settings.save_cert_chain else None,
        detect_timeout=settings.connect_timeout,
        handshake_timeout=settings.tls_timeout,
    )
    correlator = ListenerCorrelator(ssh, capabilities)
    engine = UpstreamProbeScanner(ssh, capabilities, settings=settings, tls=tls, correlator=correlator)

    _log(f"Probing {len(targets)} targets with {min(settings.workers, len(targets))} workers...")
    audit.results = engine.scan(targets, workers=settings.workers)
    _log(f"Done: {audit.down_count} down")
    return audit
