"""Nginx Collector - obtains the flattened configuration dump to audit.

Runtime truth first (`nginx -T`); when that is unavailable the include
tree under the main config file is expanded by hand.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass

from nginx_upstream_audit.connector import Connector
from nginx_upstream_audit.parser.nginx_conf import strip_comments

logger = logging.getLogger(__name__)

INCLUDE_RE = re.compile(r"(?<![\w$])include\s+([^;#{}]+);")
SAFE_PATTERN_RE = re.compile(r"^[A-Za-z0-9_./*?\-\[\]]+$")
MAX_INCLUDE_DEPTH = 8


@dataclass
class CollectorResult:
    """Result of the dump collection."""

    mode: str = "NONE"  # NGINX_T, INCLUDE_EXPANSION, FILE, NONE
    source: str = ""
    config_dump: str = ""
    version: str = ""


class NginxCollector:
    """Finds nginx on the audited host and returns its effective configuration."""

    BINARIES = ["nginx", "openresty", "nginx-debug"]
    CONF_ROOTS = [
        "/etc/nginx/nginx.conf",
        "/usr/local/nginx/conf/nginx.conf",
        "/usr/local/openresty/nginx/conf/nginx.conf",
    ]

    def __init__(self, ssh: Connector) -> None:
        self.ssh = ssh

    def collect(self) -> CollectorResult:
        result = self._collect_runtime()
        if result.mode != "NONE":
            return result
        return self._collect_includes()

    def _collect_runtime(self) -> CollectorResult:
        result = CollectorResult()
        found_binary = None
        for b in self.BINARIES:
            if self.ssh.run(f"command -v {b}").success:
                found_binary = b
                break
        if not found_binary:
            logger.debug("no nginx binary on PATH")
            return result

        dump = self.ssh.run(f"{found_binary} -T 2>/dev/null", timeout=60)
        if dump.exit_code != 0 or not dump.stdout.strip():
            logger.info("%s -T failed (exit %s); falling back to include expansion", found_binary, dump.exit_code)
            return result

        result.mode = "NGINX_T"
        result.source = f"{found_binary} -T"
        result.config_dump = dump.stdout
        v_result = self.ssh.run(f"{found_binary} -v 2>&1")
        output = v_result.stdout or v_result.stderr
        if "nginx/" in output:
            result.version = output.split("nginx/")[1].split()[0].strip()
        return result

    def _collect_includes(self) -> CollectorResult:
        for root in self.CONF_ROOTS:
            text = self.ssh.read_file(root)
            if text is None:
                continue
            seen: set[str] = set()
            chunks: list[str] = []
            self._expand(root, text, posixpath.dirname(root), chunks, seen, depth=0)
            logger.info("expanded %d config files from %s", len(seen), root)
            return CollectorResult(
                mode="INCLUDE_EXPANSION",
                source=f"include expansion of {root}",
                config_dump="\n".join(chunks),
            )
        return CollectorResult()

    def _expand(self, path: str, text: str, conf_dir: str, chunks: list[str], seen: set[str], depth: int) -> None:
        seen.add(path)
        chunks.append(f"# configuration file {path}:\n{text}")
        if depth >= MAX_INCLUDE_DEPTH:
            logger.warning("include depth limit reached at %s", path)
            return
        for pattern in INCLUDE_RE.findall(strip_comments(text)):
            pattern = pattern.strip().strip("\"'")
            if not SAFE_PATTERN_RE.match(pattern):
                logger.debug("skipping include with unexpected characters: %r", pattern)
                continue
            if not pattern.startswith("/"):
                pattern = posixpath.join(conf_dir, pattern)
            for included in self.ssh.glob(pattern):
                if included in seen:
                    continue
                body = self.ssh.read_file(included)
                if body is None:
                    seen.add(included)
                    continue
                self._expand(included, body, conf_dir, chunks, seen, depth + 1)
