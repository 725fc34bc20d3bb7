"""Base Reporter Interface."""

from abc import ABC, abstractmethod

from rich.console import Console

from nginx_upstream_audit.model.upstream import AuditResult, CandidatePlan


class BaseReporter(ABC):
    """Abstract base class for all audit reporters."""

    def __init__(self, console: Console) -> None:
        self.console = console

    @abstractmethod
    def report_results(self, audit: AuditResult) -> int:
        """Report probe results; returns the exit code (1 when any target is DOWN)."""

    @abstractmethod
    def report_plans(self, plans: list[CandidatePlan]) -> None:
        """Report candidates with their resolutions, without probing."""
