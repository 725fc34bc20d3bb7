"""Reporters for audit results."""

from nginx_upstream_audit.actions.reporters.base import BaseReporter
from nginx_upstream_audit.actions.reporters.json_reporter import JsonReporter
from nginx_upstream_audit.actions.reporters.plain_reporter import PlainReporter
from nginx_upstream_audit.actions.reporters.rich_reporter import RichReporter

REPORTERS: dict[str, type[BaseReporter]] = {
    "rich": RichReporter,
    "plain": PlainReporter,
    "json": JsonReporter,
}

__all__ = ["BaseReporter", "JsonReporter", "PlainReporter", "REPORTERS", "RichReporter"]
