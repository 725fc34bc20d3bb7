"""Binding store - layered variable bindings for backend resolution.

Sources, highest precedence first:
    override  operator-supplied KEY=VALUE (vars file, --var, remembered auto-vars)
    set       `set $var value;` statements from the dump
    map       `map $key $var { ... }` blocks
    upstream  a variable named like an upstream block -> its first server

The store is built once per run and is read-only afterwards, so probe
workers can share it without locking.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable

from nginx_upstream_audit.model.upstream import (
    BindingSource,
    MapRule,
    UpstreamBlock,
    VariableBinding,
)
from nginx_upstream_audit.parser.nginx_conf import ParsedConfig, strip_quotes

logger = logging.getLogger(__name__)

# $name or ${name}
VARIABLE_RE = re.compile(r"\$(?:\{([A-Za-z0-9_]+)\}|([A-Za-z0-9_]+))")

MAX_DEPTH = 6


def variable_names(text: str) -> list[str]:
    """Unique variable names in order of first appearance."""
    names: list[str] = []
    for m in VARIABLE_RE.finditer(text):
        name = m.group(1) or m.group(2)
        if name not in names:
            names.append(name)
    return names


def replace_variable(text: str, name: str, value: str) -> str:
    """Replace whole `$name` / `${name}` tokens with a literal value."""
    pattern = re.compile(r"\$(?:\{" + re.escape(name) + r"\}|" + re.escape(name) + r"(?![A-Za-z0-9_]))")
    return pattern.sub(lambda _m: value, text)


def clean_value(value: str) -> str:
    value = strip_quotes(value.strip())
    value = value.rstrip(";").strip()
    return strip_quotes(value)


def parse_assignment(text: str) -> tuple[str, str]:
    """Parse one KEY=VALUE override.

    Raises:
        ValueError: if there is no '=' or the key is empty.
    """
    key, sep, value = text.partition("=")
    key = key.strip().lstrip("$")
    if not sep or not key:
        raise ValueError(f"Expected KEY=VALUE, got: {text!r}")
    return key, strip_quotes(value.strip())


def load_assignments(path: Path) -> list[tuple[str, str]]:
    """Read KEY=VALUE lines; blank lines and # comments are skipped.

    Raises:
        FileNotFoundError: if the file does not exist.
    """
    pairs: list[tuple[str, str]] = []
    for line in Path(path).read_text(encoding="utf-8", errors="replace").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        pairs.append(parse_assignment(stripped))
    return pairs


class BindingStore:
    """Immutable lookup over the four binding sources."""

    def __init__(
        self,
        bindings: Iterable[VariableBinding],
        map_rules: Iterable[MapRule] = (),
        upstreams: Iterable[UpstreamBlock] = (),
    ) -> None:
        self._overrides: dict[str, VariableBinding] = {}
        self._sets: dict[str, VariableBinding] = {}
        self._maps: dict[str, list[MapRule]] = {}
        self._upstreams: dict[str, UpstreamBlock] = {}

        # last write wins within a level
        for binding in bindings:
            if binding.source is BindingSource.OVERRIDE:
                self._overrides[binding.name] = binding
            elif binding.source is BindingSource.SET:
                self._sets[binding.name] = binding
        for rule in map_rules:
            self._maps.setdefault(rule.target_var, []).append(rule)
        for block in upstreams:
            self._upstreams.setdefault(block.name, block)

    @property
    def upstreams(self) -> list[UpstreamBlock]:
        return list(self._upstreams.values())

    def upstream(self, name: str) -> UpstreamBlock | None:
        return self._upstreams.get(name)

    def bindings(self) -> list[VariableBinding]:
        """All directly-bound variables, override level first."""
        return list(self._overrides.values()) + list(self._sets.values())

    def lookup(self, name: str, context: str = "", depth: int = 0) -> VariableBinding | None:
        """Highest-precedence binding for `name`.

        Args:
            name: Variable name without the leading '$'.
            context: Current candidate text, used by the map substring fallback.
            depth: Nesting level when evaluating map source expressions.
        """
        if name in self._overrides:
            return self._overrides[name]
        if name in self._sets:
            return self._sets[name]

        mapped = self._map_value(name, context, depth)
        if mapped is not None:
            return VariableBinding(name=name, value=mapped, source=BindingSource.MAP)

        block = self._upstreams.get(name)
        if block and block.servers:
            first = block.servers[0]
            host = first.host
            if not first.is_unix_socket and ":" in host:
                host = f"[{host}]"
            return VariableBinding(name=name, value=host, source=BindingSource.UPSTREAM)
        return None

    def _map_value(self, name: str, context: str, depth: int) -> str | None:
        rules = self._maps.get(name)
        if not rules:
            return None

        default = next((r.value for r in rules if r.is_default), None)
        key_value = self._expand(rules[0].source_expr, context, depth + 1)

        if key_value is not None:
            for rule in rules:
                if rule.is_default:
                    continue
                if rule.is_regex:
                    if self._regex_key_matches(rule.key, key_value):
                        return rule.value
                elif rule.key == key_value:
                    return rule.value
            return default

        # map source is request-time; fall back to a key occurring in the candidate
        for rule in rules:
            if rule.is_default or rule.is_regex or not rule.key:
                continue
            if rule.key in context:
                return rule.value
        return default

    def _expand(self, expr: str, context: str, depth: int) -> str | None:
        """Evaluate a map source expression; None when any part is unbound."""
        if depth > MAX_DEPTH:
            return None
        value = expr
        for var in variable_names(expr):
            binding = self.lookup(var, context, depth)
            if binding is None:
                return None
            value = replace_variable(value, var, clean_value(binding.value))
        if VARIABLE_RE.search(value):
            return None
        return value

    @staticmethod
    def _regex_key_matches(key: str, value: str) -> bool:
        flags = 0
        pattern = key[1:]
        if pattern.startswith("*"):
            flags = re.IGNORECASE
            pattern = pattern[1:]
        try:
            return re.search(pattern, value, flags) is not None
        except re.error:
            return False

    def direct_table(self) -> dict[str, str]:
        """Merged override + set table (override wins), as persisted to auto-vars."""
        table = {name: b.value for name, b in self._sets.items()}
        table.update({name: b.value for name, b in self._overrides.items()})
        return table

    def persist(self, path: Path) -> Path:
        """Write the override + set table as KEY=VALUE lines for reuse next run."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"{k}={v}" for k, v in self.direct_table().items() if k]
        path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
        logger.debug("wrote %d bindings to %s", len(lines), path)
        return path


def build_binding_store(
    parsed: ParsedConfig,
    overrides: Iterable[tuple[str, str]] = (),
    remembered: Iterable[tuple[str, str]] = (),
) -> BindingStore:
    """Build the store for one run.

    Args:
        parsed: Parsed dump (set statements, map rules, upstream blocks).
        overrides: Operator KEY=VALUE pairs, in the order given.
        remembered: Auto-vars of a previous run; never replace an operator key.

    Returns:
        Read-only BindingStore.
    """
    overrides = list(overrides)
    operator_keys = {k for k, _ in overrides}

    bindings: list[VariableBinding] = [
        VariableBinding(name=s.name, value=s.value, source=BindingSource.SET)
        for s in parsed.set_statements
    ]
    for key, value in remembered:
        if key in operator_keys:
            continue
        bindings.append(VariableBinding(name=key, value=value, source=BindingSource.OVERRIDE))
    for key, value in overrides:
        bindings.append(VariableBinding(name=key, value=value, source=BindingSource.OVERRIDE))

    store = BindingStore(bindings, parsed.map_rules, parsed.upstreams)
    logger.debug(
        "binding store: %d overrides, %d sets, %d map rules, %d upstreams",
        len(overrides),
        len(parsed.set_statements),
        len(parsed.map_rules),
        len(parsed.upstreams),
    )
    return store
