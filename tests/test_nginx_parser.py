"""Tests for backend discovery over an nginx -T dump.

Verifies:
1. Every directive kind becomes a candidate, in extraction order
2. Commented-out directives and trailing comments are ignored
3. Upstream, set and map blocks are parsed with their details
4. Malformed fragments are skipped rather than raising
"""

from nginx_upstream_audit.model import CandidateKind, MapRule
from nginx_upstream_audit.parser.nginx_conf import DirectiveExtractor, parse_server_entry, strip_line_comment


def test_extracts_all_candidate_kinds_in_order(sample_nginx_t_output):
    parsed = DirectiveExtractor().parse(sample_nginx_t_output)
    labels = [c.label for c in parsed.candidates]
    assert labels == [
        "proxy:http://api",
        "fastcgi:unix:/run/php/php8.2-fpm.sock",
        "memcached:127.0.0.1:11211",
        "grpc:grpc://127.0.0.1:50051",
        "upstream_server:127.0.0.1:8081",
        "upstream_server:127.0.0.1:8082",
    ]
    servers = [c for c in parsed.candidates if c.kind is CandidateKind.UPSTREAM_SERVER]
    assert all(c.source_upstream == "api" for c in servers)


def test_commented_directives_are_not_candidates(sample_nginx_t_output):
    candidates = DirectiveExtractor().extract(sample_nginx_t_output)
    assert not any("10.9.9.9" in c.raw_text for c in candidates)


def test_upstream_blocks_keep_server_order_and_raw_spec(sample_nginx_t_output):
    parsed = DirectiveExtractor().parse(sample_nginx_t_output)
    block = parsed.upstream("api")
    assert block is not None
    assert [(s.host, s.port) for s in block.servers] == [("127.0.0.1", 8081), ("127.0.0.1", 8082)]
    assert block.servers[0].raw_spec == "127.0.0.1:8081 weight=5 max_fails=3"
    assert block.first_host == "127.0.0.1"


def test_set_and_map_statements(sample_nginx_t_output):
    parsed = DirectiveExtractor().parse(sample_nginx_t_output)
    assert [(s.name, s.value) for s in parsed.set_statements] == [("proto", "grpc")]
    rules = {(r.target_var, r.key): r.value for r in parsed.map_rules}
    assert rules[("scheme_out", MapRule.DEFAULT_KEY)] == "http"
    assert rules[("scheme_out", "grpc")] == "grpcs"
    assert all(r.source_expr == "$proto" for r in parsed.map_rules)


def test_literal_urls_and_unix_sockets_outside_pass_directives():
    dump = (
        'add_header Link "<https://cdn.example.com:8443/a.css>";\n'
        "uwsgi_pass unix:/run/uwsgi/app.sock;\n"
        "error_page 502 unix:/tmp/fallback.sock;\n"
    )
    labels = [c.label for c in DirectiveExtractor().extract(dump)]
    assert labels == [
        "uwsgi:unix:/run/uwsgi/app.sock",
        "url:https://cdn.example.com:8443",
        "unix:unix:/tmp/fallback.sock",
    ]


def test_duplicate_directives_collapse_to_one_candidate():
    dump = "proxy_pass http://10.0.0.1:80;\nproxy_pass   http://10.0.0.1:80 ;\n"
    candidates = DirectiveExtractor().extract(dump)
    assert [c.raw_text for c in candidates] == ["http://10.0.0.1:80"]


def test_malformed_fragments_are_ignored():
    dump = "upstream broken {\n server ;\nproxy_pass ;\nmap $a {\n"
    parsed = DirectiveExtractor().parse(dump)
    assert parsed.candidates == []
    assert parsed.map_rules == []


def test_parse_server_entry_forms():
    unix = parse_server_entry("unix:/run/app.sock max_fails=2")
    assert unix.is_unix_socket and unix.host == "/run/app.sock" and unix.port is None

    v6 = parse_server_entry("[::1]:9000")
    assert (v6.host, v6.port) == ("::1", 9000)

    bare = parse_server_entry("backend.internal")
    assert (bare.host, bare.port) == ("backend.internal", None)

    assert parse_server_entry("   ") is None


def test_trailing_comments_do_not_hide_statements():
    dump = (
        "upstream backend {\n"
        "    server 10.0.0.1:9000; # primary\n"
        "    server 10.0.0.2:9000; # secondary\n"
        "}\n"
        "map $nope $scheme {\n"
        '    "a" b; # c\n'
        "    default http;\n"
        "}\n"
        "set $tag 'a#b';  # quoted hash stays\n"
    )
    parsed = DirectiveExtractor().parse(dump)
    assert [(s.host, s.port) for s in parsed.upstream("backend").servers] == [
        ("10.0.0.1", 9000),
        ("10.0.0.2", 9000),
    ]
    assert [(r.key, r.value) for r in parsed.map_rules] == [("a", "b"), (MapRule.DEFAULT_KEY, "http")]
    assert [(s.name, s.value) for s in parsed.set_statements] == [("tag", "a#b")]


def test_strip_line_comment_only_cuts_at_token_start():
    assert strip_line_comment("server 10.0.0.1:9000; # primary") == "server 10.0.0.1:9000; "
    assert strip_line_comment("location ~ /a#b {") == "location ~ /a#b {"
    assert strip_line_comment('return 200 "# not a comment";#x') == 'return 200 "# not a comment";'
