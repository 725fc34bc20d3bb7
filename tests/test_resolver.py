import pytest

from nginx_upstream_audit.engine.bindings import build_binding_store
from nginx_upstream_audit.engine.resolver import VariableResolver
from nginx_upstream_audit.model import Resolved, Unresolved
from nginx_upstream_audit.parser.nginx_conf import DirectiveExtractor


def _resolver(dump: str = "", overrides=(), allow_positional: bool = True) -> VariableResolver:
    store = build_binding_store(DirectiveExtractor().parse(dump), overrides=overrides)
    return VariableResolver(store, allow_positional=allow_positional)


@pytest.mark.parametrize(
    "text",
    ["http://10.0.0.1:8080", "unix:/run/php/php-fpm.sock", "backend", "https://[::1]:443/path?x=1"],
)
def test_literal_candidates_are_unchanged(text):
    assert _resolver("set $x y;").resolve(text) == Resolved(text=text)


def test_override_beats_set_map_and_upstream():
    dump = (
        "upstream target { server 10.0.0.1:80; }\n"
        "set $target 10.0.0.2;\n"
        "map $a $target { default 10.0.0.3; }\n"
    )
    result = _resolver(dump, overrides=[("target", "10.0.0.9")]).resolve("http://$target:8080")
    assert result == Resolved(text="http://10.0.0.9:8080")


def test_cyclic_sets_terminate_unresolved():
    result = _resolver("set $a $b;\nset $b $a;\n").resolve("http://$a")
    assert isinstance(result, Unresolved)
    assert result.variables in (("a",), ("b",))


def test_map_drives_scheme():
    dump = 'set $proto grpc;\nmap $proto $scheme { default http; "grpc" grpcs; }\n'
    assert _resolver(dump).resolve("$scheme://10.0.0.5:9000") == Resolved(text="grpcs://10.0.0.5:9000")


def test_chained_sets_resolve_within_bound():
    dump = "set $host_a $host_b;\nset $host_b $host_c;\nset $host_c 10.0.0.4;\n"
    assert _resolver(dump).resolve("http://$host_a:81") == Resolved(text="http://10.0.0.4:81")


def test_request_time_variables_stay_unresolved():
    result = _resolver().resolve("http://$http_host$request_uri")
    assert isinstance(result, Unresolved)
    assert result.variables == ("http_host", "request_uri")


def test_quoted_values_are_cleaned():
    result = _resolver("set $up \"10.0.0.8:9000\";\n").resolve("http://$up")
    assert result == Resolved(text="http://10.0.0.8:9000")


def test_positional_scheme_guess_is_flagged():
    result = _resolver().resolve("$1://10.0.0.1:8080")
    assert result == Resolved(text="http://10.0.0.1:8080", heuristic=True)


def test_positional_guess_from_first_upstream_host():
    dump = "upstream pool { server api.example.com:443; }\n"
    result = _resolver(dump).resolve("$1://$2.$3.$4")
    assert result == Resolved(text="http://api.example.com", heuristic=True)


def test_positional_policy_can_be_disabled():
    result = _resolver(allow_positional=False).resolve("$1://10.0.0.1:8080")
    assert isinstance(result, Unresolved)
    assert result.variables == ("1",)
    assert result.heuristic is False


def test_map_default_after_commented_rule():
    dump = 'map $nope $scheme {\n    "a" b; # c\n    default http;\n}\n'
    assert _resolver(dump).resolve("$scheme://10.0.0.1") == Resolved(text="http://10.0.0.1")
