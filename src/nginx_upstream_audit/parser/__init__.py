"""Parser package - Converts raw configuration text into structured models.

Parsers do NOT run commands - they structure data collected elsewhere.
"""

from nginx_upstream_audit.parser.nginx_conf import DirectiveExtractor, ParsedConfig

__all__ = ["DirectiveExtractor", "ParsedConfig"]
