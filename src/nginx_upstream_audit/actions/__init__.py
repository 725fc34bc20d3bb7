"""Actions package - read-only output of audit results."""

from nginx_upstream_audit.actions.reporters import REPORTERS, PlainReporter

__all__ = ["PlainReporter", "REPORTERS"]
