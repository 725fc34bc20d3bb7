"""JSON Reporter Implementation."""

import json
from dataclasses import asdict
from enum import Enum
from typing import Any

from nginx_upstream_audit.actions.reporters.base import BaseReporter
from nginx_upstream_audit.model.upstream import AuditResult, CandidatePlan


def _default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, set):
        return sorted(obj)
    return str(obj)


class JsonReporter(BaseReporter):
    """Generates machine-readable JSON output."""

    def report_results(self, audit: AuditResult) -> int:
        data = asdict(audit)
        data["limitations"] = audit.capabilities.limitations()
        data["down_count"] = audit.down_count
        self.console.print(
            json.dumps(data, indent=2, default=_default), markup=False, highlight=False, soft_wrap=True
        )
        return 1 if audit.down_count else 0

    def report_plans(self, plans: list[CandidatePlan]) -> None:
        data = []
        for plan in plans:
            item = asdict(plan)
            item["resolution"]["resolved"] = not hasattr(plan.resolution, "variables")
            data.append(item)
        self.console.print(
            json.dumps(data, indent=2, default=_default), markup=False, highlight=False, soft_wrap=True
        )
