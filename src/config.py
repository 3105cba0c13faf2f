"""User configuration.

Settings come from, in increasing precedence:

1. ``Constants`` defaults
2. a YAML file (``ROCKYARD_CONFIG`` or ``~/.config/rockyard/config.yaml``)
3. ``ROCKYARD_*`` environment variables

Example file::

    index_url: https://index.example.org/
    store_path: ~/.cache/rockyard/store
    runtime_version: "5.4"
    concurrency:
      fetch: 8
      build: 2
    http:
      timeout: 20
      retries: 5
    store:
      lock_timeout: 300
    variables:
      OPENSSL_DIR: /opt/openssl

Invalid values are logged and ignored.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

import yaml

from constants import Constants
from common.logging_utils import configure_logging
from registry.index import HttpIndex
from store import LocalStore
from versioning.resolver import ResolveOptions

from builder import BuildConfig, host_platform

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Resolved configuration values."""
    index_url: str = field(default_factory=lambda: Constants.INDEX_URL)
    store_path: str = field(default_factory=lambda: Constants.DEFAULT_STORE_PATH)
    runtime_version: str = field(default_factory=lambda: Constants.DEFAULT_RUNTIME_VERSION)
    fetch_concurrency: int = field(default_factory=lambda: Constants.FETCH_CONCURRENCY)
    build_concurrency: int = field(default_factory=lambda: Constants.BUILD_CONCURRENCY)
    request_timeout: int = field(default_factory=lambda: Constants.REQUEST_TIMEOUT)
    http_retries: int = field(default_factory=lambda: Constants.HTTP_RETRY_MAX)
    lock_timeout: float = field(default_factory=lambda: Constants.STORE_LOCK_TIMEOUT_SEC)
    log_level: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)

    @property
    def expanded_store_path(self) -> str:
        return os.path.abspath(os.path.expanduser(self.store_path))

    def build_config(self, **overrides: Any) -> BuildConfig:
        """Host build configuration for the configured runtime and variables."""
        values: Dict[str, Any] = {"runtime_version": self.runtime_version, "variables": dict(self.variables)}
        values.update(overrides)
        return BuildConfig(**values)

    def resolve_options(self, **overrides: Any) -> ResolveOptions:
        """Resolution target: the configured runtime on the host platform."""
        values: Dict[str, Any] = {"runtime_version": self.runtime_version, "platform": host_platform()}
        values.update(overrides)
        return ResolveOptions(**values)

    def open_store(self) -> LocalStore:
        return LocalStore(self.expanded_store_path, lock_timeout=self.lock_timeout)

    def open_index(self) -> HttpIndex:
        return HttpIndex(self.index_url)


# YAML path -> Settings field
_FILE_KEYS = {
    ("index_url",): "index_url",
    ("store_path",): "store_path",
    ("runtime_version",): "runtime_version",
    ("log_level",): "log_level",
    ("concurrency", "fetch"): "fetch_concurrency",
    ("concurrency", "build"): "build_concurrency",
    ("http", "timeout"): "request_timeout",
    ("http", "retries"): "http_retries",
    ("store", "lock_timeout"): "lock_timeout",
}

_ENV_KEYS = {
    "ROCKYARD_INDEX_URL": "index_url",
    "ROCKYARD_STORE_PATH": "store_path",
    "ROCKYARD_RUNTIME_VERSION": "runtime_version",
    "ROCKYARD_FETCH_CONCURRENCY": "fetch_concurrency",
    "ROCKYARD_BUILD_CONCURRENCY": "build_concurrency",
    "ROCKYARD_REQUEST_TIMEOUT": "request_timeout",
    "ROCKYARD_HTTP_RETRIES": "http_retries",
    "ROCKYARD_LOCK_TIMEOUT": "lock_timeout",
    Constants.ENV_LOG_LEVEL: "log_level",
}


def _coerce(settings: Settings, name: str, value: Any) -> bool:
    """Assign ``value`` to field ``name`` converted to the field's type."""
    default = getattr(Settings(), name)
    try:
        if isinstance(default, bool):
            converted: Any = str(value).lower() in ("1", "true", "yes", "on")
        elif isinstance(default, int):
            converted = int(value)
            if converted < 1:
                raise ValueError("must be positive")
        elif isinstance(default, float):
            converted = float(value)
            if converted < 0:
                raise ValueError("must not be negative")
        else:
            converted = str(value)
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring invalid setting %s=%r: %s", name, value, exc)
        return False
    setattr(settings, name, converted)
    return True


def _lookup(data: Mapping[str, Any], path: tuple) -> Any:
    node: Any = data
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def load_config_file(path: Optional[str] = None) -> Dict[str, Any]:
    """Read the YAML configuration file; missing or invalid files give ``{}``."""
    path = path or os.environ.get(Constants.ENV_CONFIG) or os.path.expanduser(Constants.DEFAULT_CONFIG_PATH)
    if not os.path.isfile(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load config %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: top level must be a mapping", path)
        return {}
    return data


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from defaults, the config file and the environment."""
    environ = os.environ if environ is None else environ
    settings = Settings()
    data = load_config_file(path)

    for key_path, name in _FILE_KEYS.items():
        value = _lookup(data, key_path)
        if value is not None:
            _coerce(settings, name, value)
    variables = data.get("variables")
    if isinstance(variables, dict):
        settings.variables = {str(k): str(v) for k, v in variables.items()}
    elif variables is not None:
        logger.warning("Ignoring config 'variables': must be a mapping")

    for env_name, name in _ENV_KEYS.items():
        if env_name in environ and environ[env_name] != "":
            _coerce(settings, name, environ[env_name])

    known = {f.name for f in fields(Settings)}
    logger.debug("Loaded settings: %s", {k: getattr(settings, k) for k in sorted(known)})
    return settings


def apply_settings(settings: Settings) -> None:
    """Push settings onto ``Constants`` for code that reads them there.

    Also applies ``log_level`` to the root logger when one is configured.
    """
    Constants.INDEX_URL = settings.index_url  # type: ignore[attr-defined]
    Constants.REQUEST_TIMEOUT = settings.request_timeout  # type: ignore[attr-defined]
    Constants.HTTP_RETRY_MAX = settings.http_retries  # type: ignore[attr-defined]
    Constants.STORE_LOCK_TIMEOUT_SEC = settings.lock_timeout  # type: ignore[attr-defined]
    Constants.FETCH_CONCURRENCY = settings.fetch_concurrency  # type: ignore[attr-defined]
    Constants.BUILD_CONCURRENCY = settings.build_concurrency  # type: ignore[attr-defined]
    if settings.log_level:
        configure_logging(settings.log_level)
