"""
Configuration for the AI service: typed sections loaded from YAML, with
``${NAME}`` expansion from the environment and an optional ``.env`` file.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


@dataclass
class ServiceConfig:
    """Orchestrator defaults"""
    default_model: str = "gpt-4o"
    temperature: float = 0.7
    max_tokens: int = 1000


@dataclass
class RetryConfig:
    """Retry/backoff policy"""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    strategy: str = "linear"  # "linear" or "exponential"
    max_delay_ms: int = 10_000
    per_call_timeout_s: float = 30.0
    request_deadline_s: float | None = None


@dataclass
class RateLimitConfig:
    """Local rate limiter settings"""
    enabled: bool = True
    window_ms: int = 60_000
    default_limit: int = 60
    cleanup_multiplier: int = 3
    sweep_interval_s: float = 900.0
    model_limits: dict[str, int] = field(default_factory=dict)


@dataclass
class RegistryConfig:
    """Model registry refresh settings"""
    refresh_interval_s: float = 300.0
    source_path: str | None = None


@dataclass
class UsageConfig:
    """Usage recorder sink"""
    sink: str = "memory"  # "memory", "jsonl" or "none"
    log_dir: str = "logs/usage"
    max_records: int = 10_000  # memory sink only


@dataclass
class ProviderConfig:
    """单个供应商的连接配置"""
    api_key: str
    base_url: str | None = None
    timeout: float | None = None


@dataclass
class ProxyConfig:
    """Outbound proxy shared by all adapters"""
    enable: bool = False
    host: str | None = None
    port: int | None = None


@dataclass
class HttpClientConfig:
    """httpx pool limits and default timeout"""
    max_connections: int = 100
    max_keepalive_connections: int = 20
    timeout: float = 30.0


@dataclass
class Config:
    """完整服务配置"""
    service: ServiceConfig = field(default_factory=ServiceConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    usage: UsageConfig = field(default_factory=UsageConfig)
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    models: list[dict[str, Any]] = field(default_factory=list)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    http_client: HttpClientConfig = field(default_factory=HttpClientConfig)


class ConfigManager:
    """
    YAML-backed configuration for AIService.

    ``${NAME}`` references are expanded from the environment; a ``.env`` file
    found next to the config file (or in a parent directory) seeds variables
    that are not already set. Provider sections expand lazily so an unset key
    only drops that provider.
    """

    def __init__(self, config_path: str | Path | None = None):
        """
        Args:
            config_path: YAML file to read; ``config.yaml`` in the working directory by default
        """
        self._path = Path(config_path) if config_path else Path("config.yaml")
        self._config: Config | None = None

    @classmethod
    def from_dict(cls, raw: dict) -> "ConfigManager":
        """Build a manager around an in-memory mapping (no file access)."""
        manager = cls()
        manager._config = manager._parse_config(expand_env(raw, strict=False))
        return manager

    @property
    def config(self) -> Config:
        """配置对象，首次访问时加载"""
        if self._config is None:
            self.load()
        return self._config

    @property
    def config_path(self) -> Path:
        return self._path

    def load(self, config_path: str | Path | None = None) -> Config:
        """
        Read, expand and parse the YAML file.

        Raises:
            ConfigError: If the file is missing, malformed or references an unset variable
        """
        path = Path(config_path) if config_path else self._path

        dotenv = find_dotenv(path)
        if dotenv is not None:
            load_dotenv(dotenv)

        raw = load_yaml_mapping(path)
        providers = raw.pop('providers', None)
        raw = expand_env(raw)
        if providers is not None:
            raw['providers'] = providers

        self._config = self._parse_config(raw)
        return self._config

    def reload(self) -> Config:
        return self.load()

    def get_env_vars_used(self, config_path: str | Path | None = None) -> set[str]:
        """Names of all ``${NAME}`` references in the config file."""
        path = Path(config_path) if config_path else self._path
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {path}")
        return set(ENV_REFERENCE.findall(text))

    def _section(self, raw: dict, name: str) -> dict:
        section = raw.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"'{name}' section must be a mapping")
        return section

    def _parse_config(self, raw: dict) -> Config:
        """Parse raw configuration dictionary into Config object."""
        config = Config()

        try:
            service_raw = self._section(raw, 'service')
            config.service = ServiceConfig(
                default_model=str(service_raw.get('default_model', 'gpt-4o')),
                temperature=float(service_raw.get('temperature', 0.7)),
                max_tokens=int(service_raw.get('max_tokens', 1000)),
            )

            retry_raw = self._section(raw, 'retry')
            deadline = retry_raw.get('request_deadline_s')
            config.retry = RetryConfig(
                max_attempts=int(retry_raw.get('max_attempts', 3)),
                base_delay_ms=int(retry_raw.get('base_delay_ms', 1000)),
                strategy=str(retry_raw.get('strategy', 'linear')),
                max_delay_ms=int(retry_raw.get('max_delay_ms', 10_000)),
                per_call_timeout_s=float(retry_raw.get('per_call_timeout_s', 30.0)),
                request_deadline_s=float(deadline) if deadline is not None else None,
            )

            limits_raw = self._section(raw, 'rate_limits')
            model_limits = limits_raw.get('models') or {}
            if not isinstance(model_limits, dict):
                raise ConfigError("'rate_limits.models' must be a mapping")
            config.rate_limits = RateLimitConfig(
                enabled=bool(limits_raw.get('enabled', True)),
                window_ms=int(limits_raw.get('window_ms', 60_000)),
                default_limit=int(limits_raw.get('default_limit', 60)),
                cleanup_multiplier=int(limits_raw.get('cleanup_multiplier', 3)),
                sweep_interval_s=float(limits_raw.get('sweep_interval_s', 900.0)),
                model_limits={str(k): int(v) for k, v in model_limits.items()},
            )

            registry_raw = self._section(raw, 'registry')
            config.registry = RegistryConfig(
                refresh_interval_s=float(registry_raw.get('refresh_interval_s', 300.0)),
                source_path=registry_raw.get('source_path'),
            )

            usage_raw = self._section(raw, 'usage')
            config.usage = UsageConfig(
                sink=str(usage_raw.get('sink', 'memory')),
                log_dir=str(usage_raw.get('log_dir', 'logs/usage')),
                max_records=int(usage_raw.get('max_records', 10_000)),
            )

            proxy_raw = self._section(raw, 'proxy')
            port = proxy_raw.get('port')
            config.proxy = ProxyConfig(
                enable=bool(proxy_raw.get('enable', False)),
                host=proxy_raw.get('host'),
                port=int(port) if port is not None else None,
            )

            http_client_raw = self._section(raw, 'http_client')
            config.http_client = HttpClientConfig(
                max_connections=int(http_client_raw.get('max_connections', 100)),
                max_keepalive_connections=int(http_client_raw.get('max_keepalive_connections', 20)),
                timeout=float(http_client_raw.get('timeout', 30.0)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}")

        if config.usage.sink not in ("memory", "jsonl", "none"):
            raise ConfigError(f"Unknown usage sink: {config.usage.sink}")
        if config.retry.strategy not in ("linear", "exponential"):
            raise ConfigError(f"Unknown retry strategy: {config.retry.strategy}")
        if config.usage.max_records < 1:
            raise ConfigError("'usage.max_records' must be at least 1")
        if config.retry.max_attempts < 1:
            raise ConfigError("'retry.max_attempts' must be at least 1")
        if config.retry.base_delay_ms < 0 or config.retry.max_delay_ms < 0:
            raise ConfigError("'retry' delays must not be negative")

        for provider_name, provider_data in self._section(raw, 'providers').items():
            if not isinstance(provider_data, dict):
                raise ConfigError(f"Provider '{provider_name}' configuration must be a mapping")
            provider_data = expand_env(provider_data, strict=False)

            api_key = str(provider_data.get('api_key') or '').strip()
            if not api_key:
                continue  # unset key, provider disabled

            timeout = provider_data.get('timeout')
            config.providers[provider_name] = ProviderConfig(
                api_key=api_key,
                base_url=provider_data.get('base_url'),
                timeout=float(timeout) if timeout is not None else None,
            )

        models_raw = raw.get('models') or []
        if not isinstance(models_raw, list):
            raise ConfigError("'models' section must be a list of model rows")
        for index, row in enumerate(models_raw):
            if not isinstance(row, dict):
                raise ConfigError(f"Model row {index} must be a mapping")
        config.models = [dict(row) for row in models_raw]

        return config

    def get_provider_config(self, provider: str) -> ProviderConfig:
        """
        Raises:
            ConfigError: If the provider has no section or no API key
        """
        try:
            return self.config.providers[provider]
        except KeyError:
            raise ConfigError(f"Provider not configured: {provider}")

    def get_available_providers(self) -> list[str]:
        """Providers that have an API key configured."""
        return list(self.config.providers)

    def get_proxy_url(self) -> str | None:
        """``host:port`` of the outbound proxy, or None when disabled."""
        proxy = self.config.proxy
        if not (proxy.enable and proxy.host):
            return None
        base = proxy.host.rstrip("/")
        return f"{base}:{proxy.port}" if proxy.port else base


ENV_REFERENCE = re.compile(r'\$\{([^}]+)\}')


def expand_env(value: Any, strict: bool = True) -> Any:
    """
    Replace ``${NAME}`` references in strings nested anywhere in ``value``.

    An unset variable raises ConfigError when ``strict``; otherwise it expands
    to "" and a string made only of unset references becomes None.
    """
    if isinstance(value, dict):
        return {key: expand_env(item, strict) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item, strict) for item in value]
    if not isinstance(value, str):
        return value

    missing: list[str] = []

    def lookup(match: re.Match) -> str:
        name = match.group(1)
        if name in os.environ:
            return os.environ[name]
        if strict:
            raise ConfigError(f"Environment variable not set: {name}")
        missing.append(name)
        return ""

    expanded = ENV_REFERENCE.sub(lookup, value)
    if missing and not expanded:
        return None
    return expanded


def find_dotenv(config_path: Path) -> Path | None:
    """Nearest ``.env`` in the config file's directory or one of its parents."""
    start = config_path if config_path.is_dir() else config_path.parent
    for directory in (start, *start.parents):
        candidate = directory / ".env"
        if candidate.is_file():
            return candidate
    return None


def load_dotenv(path: Path) -> None:
    """Export ``KEY=value`` lines into os.environ without overriding non-empty values."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        raise ConfigError(f"Failed to read {path}: {e}")

    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        if not os.environ.get(key):
            os.environ[key] = value.strip().strip('"').strip("'")


def load_yaml_mapping(path: Path) -> dict:
    """Read a YAML file that must contain a top-level mapping."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML format: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if raw is None:
        raise ConfigError("Configuration file is empty")
    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a YAML mapping")
    return raw
