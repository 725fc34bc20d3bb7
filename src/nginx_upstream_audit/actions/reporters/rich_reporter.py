"""Rich Reporter Implementation."""

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from nginx_upstream_audit.actions.reporters.base import BaseReporter
from nginx_upstream_audit.model.upstream import (
    AuditResult,
    CandidatePlan,
    ProbeResult,
    ProbeStatus,
    Unresolved,
)

STATUS_STYLE = {
    ProbeStatus.UP: "green",
    ProbeStatus.DOWN: "bold red",
    ProbeStatus.SKIPPED: "yellow",
}


class RichReporter(BaseReporter):
    """Generates a terminal summary table using Rich."""

    def report_results(self, audit: AuditResult) -> int:
        up = sum(1 for r in audit.results if r.status is ProbeStatus.UP)
        skipped = sum(1 for r in audit.results if r.status is ProbeStatus.SKIPPED)

        self.console.print()
        self.console.print("Upstream Health", style="bold underline")
        self.console.print(f"   Dump: {audit.dump_source or 'n/a'}")
        if audit.nginx_version:
            self.console.print(f"   nginx: {audit.nginx_version}")
        self.console.print(
            f"   Summary: [green]{up} up[/green], [red]{audit.down_count} down[/red], "
            f"[yellow]{skipped} skipped[/yellow] of {len(audit.results)} targets"
        )
        self.console.print()

        if audit.results:
            table = Table(show_header=True, header_style="bold white", expand=True)
            table.add_column("Candidate")
            table.add_column("Endpoint")
            table.add_column("Proto", justify="center")
            table.add_column("Status", justify="center")
            table.add_column("Detail")
            for result in audit.results:
                style = STATUS_STYLE[result.status]
                table.add_row(
                    escape(result.target.origin.label),
                    escape(result.target.endpoint) if result.target.probeable else "-",
                    result.target.scheme,
                    f"[{style}]{result.status.value}[/{style}]",
                    escape(self._detail(result)),
                )
            self.console.print(table)
        else:
            self.console.print("   No backend candidates found in the configuration.", style="dim")

        limitations = audit.capabilities.limitations() + audit.notes
        if limitations:
            self.console.print(
                Panel("\n".join(f"- {escape(l)}" for l in limitations), title="Limitations", border_style="yellow")
            )
        if audit.report_path:
            self.console.print(f"   Report written to [cyan]{audit.report_path}[/cyan]")
        return 1 if audit.down_count else 0

    def report_plans(self, plans: list[CandidatePlan]) -> None:
        table = Table(show_header=True, header_style="bold white", expand=True)
        table.add_column("Candidate")
        table.add_column("Resolution")
        table.add_column("Targets")
        for plan in plans:
            resolution = plan.resolution
            if isinstance(resolution, Unresolved):
                text = f"[yellow]{escape(resolution.text)}[/yellow] (missing: {escape(', '.join(resolution.variables))})"
            else:
                text = escape(resolution.text)
            if resolution.heuristic:
                text += " [dim](heuristic)[/dim]"
            targets = "\n".join(
                escape(t.endpoint) if t.probeable else "[yellow]templated[/yellow]" for t in plan.targets
            )
            table.add_row(escape(plan.candidate.label), text, targets or "-")
        self.console.print(table)

    @staticmethod
    def _detail(result: ProbeResult) -> str:
        parts = [result.reason]
        if result.http_status_line:
            parts.append(result.http_status_line)
        if result.tls is not None:
            parts.append(f"TLS {result.tls.detection.value}" + (f" alpn={result.tls.alpn}" if result.tls.alpn else ""))
        if result.listener is not None:
            who = result.listener.likely_backend or result.listener.owner or result.listener.process_name
            if who:
                parts.append(f"listener={who}")
        return ", ".join(parts)
