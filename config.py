"""Startup configuration: listen port and the hosts whose loops are observed."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_PATH = os.environ.get('LOOP_OBSERVATORY_CONFIG', 'loop-observatory.yaml')
DEFAULT_PORT = 5050
DEFAULT_WATCH_DIR = '/tmp/ralph'


class ConfigError(ValueError):
    """Raised when the configuration cannot be used to start the observatory."""


@dataclass(frozen=True)
class HostConfig:
    """One machine running agent loops, reached locally or over SSH."""

    name: str
    host: str = 'localhost'
    user: str = 'root'
    port: int = 22
    key: Optional[str] = None
    password: Optional[str] = None
    local: bool = False
    watch_dir: str = DEFAULT_WATCH_DIR

    def public_dict(self) -> dict[str, Any]:
        """Descriptor safe to send to viewers (no key or password)."""
        return {
            'name': self.name,
            'host': self.host,
            'user': self.user,
            'port': self.port,
            'local': self.local,
            'watchDir': self.watch_dir,
        }


@dataclass(frozen=True)
class AppConfig:
    port: int = DEFAULT_PORT
    hosts: tuple[HostConfig, ...] = field(default_factory=tuple)

    def host(self, name: str) -> Optional[HostConfig]:
        for host in self.hosts:
            if host.name == name:
                return host
        return None


def _first(raw: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return default


def parse_host(raw: Any, index: int) -> HostConfig:
    """Validate one host entry from the config document."""
    if not isinstance(raw, dict):
        raise ConfigError(f'hosts[{index}]: expected a mapping, got {type(raw).__name__}')
    name = str(raw.get('name') or '').strip()
    if not name:
        raise ConfigError(f'hosts[{index}]: missing "name"')

    local = bool(raw.get('local', False))
    address = str(_first(raw, 'host', 'address', default='localhost' if local else '')).strip()
    key = _first(raw, 'key')
    password = _first(raw, 'password')

    if not local:
        if not address:
            raise ConfigError(f'Host "{name}": missing "host"')
        if not key and not password:
            raise ConfigError(f'Host "{name}": must have either "key", "password", or "local: true" configured')

    try:
        port = int(raw.get('port', 22))
    except (TypeError, ValueError):
        raise ConfigError(f'Host "{name}": invalid ssh port {raw.get("port")!r}')

    return HostConfig(
        name=name,
        host=address,
        user=str(raw.get('user') or 'root'),
        port=port,
        key=str(key) if key else None,
        password=str(password) if password else None,
        local=local,
        watch_dir=str(_first(raw, 'watchDir', 'watch_dir', 'watchDirectory', default=DEFAULT_WATCH_DIR)),
    )


def parse_config(document: Any) -> AppConfig:
    """Build an AppConfig from an already-decoded YAML document."""
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ConfigError('Config root must be a mapping')

    server = document.get('server') or {}
    port = os.environ.get('LOOP_OBSERVATORY_PORT') or server.get('port') or DEFAULT_PORT
    try:
        port = int(port)
    except (TypeError, ValueError):
        raise ConfigError(f'Invalid server port {port!r}')

    raw_hosts = document.get('hosts') or []
    if not isinstance(raw_hosts, list):
        raise ConfigError('"hosts" must be a list')

    hosts = []
    seen = set()
    for index, raw in enumerate(raw_hosts):
        host = parse_host(raw, index)
        if host.name in seen:
            raise ConfigError(f'Duplicate host name "{host.name}"')
        seen.add(host.name)
        hosts.append(host)

    return AppConfig(port=port, hosts=tuple(hosts))


def load_config(path: str | Path | None = None) -> AppConfig:
    """Read and validate the YAML config file."""
    path = Path(path or CONFIG_PATH)
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f'Cannot read config {path}: {e}')
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f'Invalid YAML in {path}: {e}')
    return parse_config(document)
