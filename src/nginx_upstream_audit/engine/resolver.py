"""Variable resolver - bounded substitution of nginx variables in candidates."""

from __future__ import annotations

import logging
import re

from nginx_upstream_audit.engine.bindings import (
    MAX_DEPTH,
    BindingStore,
    clean_value,
    replace_variable,
    variable_names,
)
from nginx_upstream_audit.model.upstream import Resolution, Resolved, Unresolved

logger = logging.getLogger(__name__)

POSITIONAL_RE = re.compile(r"\$\{?[0-9]+\}?")


class VariableResolver:
    """Replaces `$name` tokens using a BindingStore.

    Resolution is a fixed-point loop capped at MAX_DEPTH rounds, so cyclic
    `set`/`map` definitions terminate with tokens left in place.
    """

    def __init__(self, store: BindingStore, allow_positional: bool = True) -> None:
        self.store = store
        self.allow_positional = allow_positional

    def substitute(self, text: str) -> str:
        """Bounded substitution pass; unbound tokens are left as they are."""
        current = text
        for _round in range(MAX_DEPTH):
            names = variable_names(current)
            if not names:
                break
            progressed = False
            for name in names:
                binding = self.store.lookup(name, context=current)
                if binding is None:
                    continue
                value = clean_value(binding.value)
                updated = replace_variable(current, name, value)
                if updated != current:
                    current = updated
                    progressed = True
            if not progressed:
                break
        return current

    def resolve(self, text: str) -> Resolution:
        """Resolve every variable in `text`.

        Returns:
            Resolved when no token remains, Unresolved (with the leftover
            variable names) otherwise. Literal input comes back unchanged.
        """
        if not variable_names(text):
            return Resolved(text=text)

        current = self.substitute(text)
        heuristic = False

        if self.allow_positional and POSITIONAL_RE.search(current):
            guessed = self._try_positionals(current)
            if guessed != current:
                logger.debug("positional guess: %s -> %s", current, guessed)
                heuristic = True
                current = self.substitute(guessed)

        leftover = variable_names(current)
        if leftover:
            return Unresolved(text=current, variables=tuple(leftover), heuristic=heuristic)
        return Resolved(text=current, heuristic=heuristic)

    def _try_positionals(self, text: str) -> str:
        """Best-effort guess for regex capture variables.

        $1 becomes a scheme when it is the only positional; otherwise the
        first upstream server's hostname labels are mapped onto $2, $3, ...
        This is a guess, and callers flag the result as heuristic.
        """
        if re.search(r"\$\{?1\}?(?![0-9])", text):
            for scheme in ("http", "https"):
                trial = replace_variable(text, "1", scheme)
                if not POSITIONAL_RE.search(trial):
                    return trial

        upstreams = self.store.upstreams
        if upstreams and upstreams[0].servers:
            first = upstreams[0].servers[0]
            host = first.host
            if "." in host and not first.is_unix_socket:
                guessed = text
                for idx, label in enumerate(host.split(".")):
                    guessed = replace_variable(guessed, str(idx + 2), label)
                return replace_variable(guessed, "1", "http")
        return text
