"""Configuration management for nginx-upstream-audit: SSH profiles and probe settings."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import keyring
import yaml
from keyring.errors import KeyringError

from nginx_upstream_audit.connector.ssh import SSHConfig

logger = logging.getLogger(__name__)

MAX_WORKERS = 16
FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class ProbeSettings:
    """Knobs for one audit run."""

    workers: int = 8
    connect_timeout: float = 3
    tls_timeout: float = 6
    http_timeout: float = 5
    protocol_timeout: float = 4
    target_budget: float = 15
    positional: bool = True  # allow the $1/$2 guess for leftover positional tokens
    auto_apply: bool = True  # reuse auto_vars.txt from a previous run
    save_cert_chain: bool = False
    output_dir: str = "nginx-upstream-audit-out"

    def __post_init__(self) -> None:
        self.workers = max(1, min(MAX_WORKERS, int(self.workers)))

    @property
    def output_path(self) -> Path:
        return Path(self.output_dir).expanduser()

    @property
    def dump_dir(self) -> Path:
        return self.output_path / "dump"

    @property
    def auto_vars_path(self) -> Path:
        return self.output_path / "auto_vars.txt"

    def merged(self, **overrides: Any) -> "ProbeSettings":
        """Copy with the non-None overrides applied (CLI flags)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)


class ConfigManager:
    """Manages server profiles and probe defaults stored as YAML, passwords in the OS keyring."""

    def __init__(self, config_dir: Path | None = None) -> None:
        if config_dir is None:
            env_config = os.getenv("NGINX_UPSTREAM_AUDIT_CONFIG")
            if env_config:
                config_dir = Path(env_config).expanduser().resolve()
            else:
                config_dir = Path.home() / ".nginx-upstream-audit"

        self.config_dir = Path(config_dir)
        self.profiles_file = self.config_dir / "profiles.yaml"
        self.settings_file = self.config_dir / "settings.yaml"
        self.service_id = "nginx-upstream-audit"
        self._ensure_config_dir()

    def _ensure_config_dir(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        if not self.profiles_file.exists():
            self._save_profiles({})

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("ignoring unreadable %s: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _load_profiles(self) -> dict[str, Any]:
        return self._load_yaml(self.profiles_file)

    def _save_profiles(self, profiles: dict[str, Any]) -> None:
        """Save profiles with owner-only permissions."""
        self.profiles_file.touch(mode=0o600)
        with open(self.profiles_file, "w", encoding="utf-8") as f:
            yaml.safe_dump(profiles, f)

    def add_profile(self, name: str, config: SSHConfig) -> None:
        """Add or update a server profile."""
        profiles = self._load_profiles()

        password_ref = None
        if config.password:
            try:
                keyring.set_password(self.service_id, name, config.password)
                password_ref = "__keyring__"
            except KeyringError:
                # No usable backend (headless host): keep it in the 0600 file.
                password_ref = config.password

        profiles[name] = {
            "host": config.host,
            "user": config.user,
            "port": config.port,
            "key_path": config.key_path,
            "use_sudo": config.use_sudo,
            "password": password_ref,
        }
        self._save_profiles(profiles)

    def get_profile(self, name: str) -> SSHConfig | None:
        profiles = self._load_profiles()
        data = profiles.get(name)
        if not data:
            return None

        password = data.get("password")
        if password == "__keyring__":
            try:
                password = keyring.get_password(self.service_id, name)
            except KeyringError:
                password = None

        return SSHConfig(
            host=data["host"],
            user=data.get("user", "root"),
            port=data.get("port", 22),
            key_path=data.get("key_path"),
            use_sudo=data.get("use_sudo", True),
            password=password,
        )

    def list_profiles(self) -> dict[str, Any]:
        return self._load_profiles()

    def remove_profile(self, name: str) -> bool:
        profiles = self._load_profiles()
        if name not in profiles:
            return False
        if profiles[name].get("password") == "__keyring__":
            try:
                keyring.delete_password(self.service_id, name)
            except KeyringError as e:
                logger.debug("keyring cleanup for %s failed: %s", name, e)
        del profiles[name]
        self._save_profiles(profiles)
        return True

    def load_settings(self) -> ProbeSettings:
        """Defaults < settings.yaml < environment."""
        known = {f.name for f in fields(ProbeSettings)}
        data = self._load_yaml(self.settings_file)
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("unknown keys in %s: %s", self.settings_file, ", ".join(unknown))
        settings = ProbeSettings(**{k: v for k, v in data.items() if k in known})

        positional = os.getenv("NGINX_UPSTREAM_AUDIT_POSITIONAL")
        if positional is not None:
            settings.positional = positional.strip().lower() not in FALSE_VALUES
        workers = os.getenv("NGINX_UPSTREAM_AUDIT_WORKERS")
        if workers:
            try:
                settings = settings.merged(workers=int(workers))
            except ValueError:
                logger.warning("ignoring NGINX_UPSTREAM_AUDIT_WORKERS=%r (not an integer)", workers)
        return settings
