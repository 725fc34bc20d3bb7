"""Pytest configuration and fixtures for nginx-upstream-audit tests."""

import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from nginx_upstream_audit.config import ProbeSettings
from nginx_upstream_audit.connector.ssh import CommandResult

ALL_TOOLS = (
    "TOOL bash\nTOOL timeout\nTOOL nc\nTOOL curl\nTOOL openssl\nTOOL getent\n"
    "TOOL ss\nTOOL od\nH2PK\nCA /etc/ssl/certs/ca-certificates.crt\n"
)


class FakeConnector:
    """Maps command substrings to canned stdout; unknown commands fail with no output."""

    def __init__(self, outputs=None, files=None, globs=None) -> None:
        self.outputs = dict(outputs or {})
        self.files = dict(files or {})
        self.globs = dict(globs or {})
        self.commands: list[str] = []

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return None

    def run(self, command, use_sudo=None, timeout=None):
        self.commands.append(command)
        for needle, out in self.outputs.items():
            if needle in command:
                return CommandResult(command=command, stdout=out, stderr="", exit_code=0)
        return CommandResult(command=command, stdout="", stderr="", exit_code=1)

    def read_file(self, path):
        return self.files.get(path)

    def glob(self, pattern):
        return list(self.globs.get(pattern, []))

    def ran(self, needle: str) -> bool:
        return any(needle in c for c in self.commands)


@pytest.fixture
def fake_connector():
    return FakeConnector


@pytest.fixture
def probe_settings(tmp_path):
    return ProbeSettings(output_dir=str(tmp_path / "out"))


@pytest.fixture
def self_signed_pem():
    """PEM of a throwaway self-signed certificate for backend.internal."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "backend.internal")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


@pytest.fixture
def sample_nginx_t_output():
    """Sample nginx -T output covering every kind of backend reference."""
    return '''# configuration file /etc/nginx/nginx.conf:
user www-data;
events { worker_connections 768; }
http {
    include /etc/nginx/conf.d/*.conf;
}

# configuration file /etc/nginx/conf.d/app.conf:
upstream api {
    server 127.0.0.1:8081 weight=5 max_fails=3;
    server 127.0.0.1:8082 backup;
}

map $proto $scheme_out {
    default http;
    "grpc" grpcs;
}

server {
    listen 80;
    server_name app.example.com;
    set $proto grpc;

    location / {
        proxy_pass http://api;
    }
    location ~ \\.php$ {
        fastcgi_pass unix:/run/php/php8.2-fpm.sock;
        include fastcgi_params;
    }
    location /cache {
        memcached_pass 127.0.0.1:11211;
    }
    location /rpc {
        grpc_pass grpc://127.0.0.1:50051;
    }
    # proxy_pass http://10.9.9.9:1234;
}
'''
