import pytest
import yaml
from keyring.errors import KeyringError

from nginx_upstream_audit import config as config_module
from nginx_upstream_audit.config import ConfigManager, ProbeSettings
from nginx_upstream_audit.connector.ssh import SSHConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("NGINX_UPSTREAM_AUDIT_POSITIONAL", raising=False)
    monkeypatch.delenv("NGINX_UPSTREAM_AUDIT_WORKERS", raising=False)


@pytest.fixture
def fake_keyring(monkeypatch):
    store = {}
    monkeypatch.setattr(config_module.keyring, "set_password", lambda s, n, p: store.__setitem__((s, n), p))
    monkeypatch.setattr(config_module.keyring, "get_password", lambda s, n: store.get((s, n)))
    monkeypatch.setattr(config_module.keyring, "delete_password", lambda s, n: store.pop((s, n)))
    return store


def test_probe_settings_defaults_and_clamp(tmp_path):
    settings = ProbeSettings(output_dir=str(tmp_path))
    assert (settings.workers, settings.target_budget, settings.positional) == (8, 15, True)
    assert settings.auto_vars_path == tmp_path / "auto_vars.txt"
    assert settings.dump_dir == tmp_path / "dump"
    assert ProbeSettings(workers=100).workers == 16
    assert ProbeSettings(workers=0).workers == 1
    assert settings.merged(workers=4, positional=None).workers == 4
    assert settings.merged(workers=4, positional=None).positional is True


def test_profile_roundtrip_with_keyring(tmp_path, fake_keyring):
    mgr = ConfigManager(tmp_path)
    mgr.add_profile("web", SSHConfig(host="10.0.0.1", user="deploy", password="s3cret"))

    stored = yaml.safe_load(mgr.profiles_file.read_text())
    assert stored["web"]["password"] == "__keyring__"
    assert mgr.get_profile("web").password == "s3cret"
    assert mgr.get_profile("missing") is None

    assert mgr.remove_profile("web") is True
    assert fake_keyring == {}
    assert mgr.remove_profile("web") is False


def test_password_kept_in_file_without_keyring(tmp_path, monkeypatch):
    def broken(*args):
        raise KeyringError("no backend")

    monkeypatch.setattr(config_module.keyring, "set_password", broken)
    mgr = ConfigManager(tmp_path)
    mgr.add_profile("web", SSHConfig(host="10.0.0.1", password="s3cret"))
    assert mgr.list_profiles()["web"]["password"] == "s3cret"
    assert mgr.get_profile("web").password == "s3cret"
    assert oct(mgr.profiles_file.stat().st_mode & 0o777) == oct(0o600)


def test_load_settings_yaml_then_env(tmp_path, monkeypatch):
    mgr = ConfigManager(tmp_path)
    mgr.settings_file.write_text("workers: 40\nhttp_timeout: 2\nbogus: 1\n")
    settings = mgr.load_settings()
    assert (settings.workers, settings.http_timeout) == (16, 2)

    monkeypatch.setenv("NGINX_UPSTREAM_AUDIT_POSITIONAL", "off")
    monkeypatch.setenv("NGINX_UPSTREAM_AUDIT_WORKERS", "3")
    settings = mgr.load_settings()
    assert (settings.workers, settings.positional) == (3, False)

    monkeypatch.setenv("NGINX_UPSTREAM_AUDIT_WORKERS", "many")
    assert mgr.load_settings().workers == 16


def test_config_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("NGINX_UPSTREAM_AUDIT_CONFIG", str(tmp_path / "cfg"))
    mgr = ConfigManager()
    assert mgr.config_dir == (tmp_path / "cfg").resolve()
    assert mgr.profiles_file.exists()
