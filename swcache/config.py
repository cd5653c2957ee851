"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Partition kinds every generation owns.
PARTITION_KINDS = ("static", "dynamic", "runtime")

# Version value that asks for a version derived from the asset manifest.
AUTO_VERSION = "auto"

DEFAULT_LOCAL_ASSETS = ("/", "/index.html", "/manifest.webmanifest")

DEFAULT_NETWORK_FIRST = ("/api/",)

DEFAULT_CACHE_FIRST = (
    "/icons/",
    "/assets/",
    ".png",
    ".jpg",
    ".jpeg",
    ".svg",
    ".webp",
    ".woff2",
    ".woff",
)

DEFAULT_OFFLINE_MESSAGES = {
    "en": "You are offline. Check your internet connection.",
    "pt-BR": "Você está offline. Verifique sua conexão com a internet.",
}


def _is_http_url(value: str) -> bool:
    return value.startswith(("http://", "https://"))


@dataclass(frozen=True)
class WorkerConfig:
    """Identity of the worker generation."""

    version: str = AUTO_VERSION
    cache_prefix: str = ""  # optional namespace in front of partition names
    origin: str = "http://localhost:8000"  # application origin requests are resolved against
    skip_waiting: bool = True  # supersede the previous generation as soon as install succeeds
    refresh_interval: int = 0  # seconds between static asset refreshes, 0 disables

    def __post_init__(self) -> None:
        if not self.version:
            raise ConfigError("Worker version cannot be empty")
        if "-" in self.version:
            raise ConfigError(f"Worker version must not contain '-' (got '{self.version}')")
        if not _is_http_url(self.origin):
            raise ConfigError(f"Worker origin must start with http:// or https://, got '{self.origin}'")
        parts = urlsplit(self.origin)
        if not parts.hostname:
            raise ConfigError(f"Worker origin has no hostname: '{self.origin}'")
        if parts.path not in ("", "/"):
            raise ConfigError(f"Worker origin must not contain a path: '{self.origin}'")
        if self.refresh_interval < 0:
            raise ConfigError(f"Worker refresh_interval must be non-negative, got {self.refresh_interval}")


def _get_default_storage_path() -> str:
    """Get the default cache database path using XDG-compliant directory."""
    home = Path.home()
    return str(home / ".local" / "share" / "swcache" / "cache.db")


DEFAULT_STORAGE_PATH = _get_default_storage_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the SQLite partition store."""

    path: str = DEFAULT_STORAGE_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Storage path cannot be empty")


@dataclass(frozen=True)
class AssetsConfig:
    """Assets pre-cached at install time.

    - local: origin-relative paths; every one must be fetched or install fails.
    - external: absolute library URLs cached best-effort.
    """

    local: tuple[str, ...] = DEFAULT_LOCAL_ASSETS
    external: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for path in self.local:
            if not path.startswith("/"):
                raise ConfigError(f"Local asset must be an origin-relative path starting with '/', got '{path}'")
        for url in self.external:
            if not _is_http_url(url):
                raise ConfigError(f"External asset must start with http:// or https://, got '{url}'")


@dataclass(frozen=True)
class RoutesConfig:
    """URL patterns feeding the strategy rule table.

    Patterns starting with http(s):// match a URL prefix, patterns starting
    with "/" match a path prefix, anything else matches a path suffix.
    """

    network_first: tuple[str, ...] = DEFAULT_NETWORK_FIRST
    cache_first: tuple[str, ...] = DEFAULT_CACHE_FIRST

    def __post_init__(self) -> None:
        for pattern in self.network_first + self.cache_first:
            if not pattern:
                raise ConfigError("Route patterns cannot be empty")


@dataclass(frozen=True)
class OfflineConfig:
    """Offline fallback behaviour."""

    root_document: str = "/index.html"
    placeholder_image: str = "/icons/icon-192x192.png"
    default_language: str = "en"
    messages: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_OFFLINE_MESSAGES))

    def __post_init__(self) -> None:
        if not self.root_document.startswith("/"):
            raise ConfigError(f"Offline root_document must start with '/', got '{self.root_document}'")
        if not self.placeholder_image.startswith("/"):
            raise ConfigError(f"Offline placeholder_image must start with '/', got '{self.placeholder_image}'")
        if self.default_language not in self.messages:
            raise ConfigError(f"No offline message for default language '{self.default_language}'")


@dataclass(frozen=True)
class ExpirationPolicy:
    """Optional eviction policy for one partition kind."""

    max_entries: int | None = None
    max_age_seconds: int | None = None

    def __post_init__(self) -> None:
        if self.max_entries is not None and self.max_entries < 1:
            raise ConfigError(f"max_entries must be at least 1 (got {self.max_entries})")
        if self.max_age_seconds is not None and self.max_age_seconds < 1:
            raise ConfigError(f"max_age_seconds must be at least 1 (got {self.max_age_seconds})")


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for outgoing fetches."""

    timeout: int = 10  # transport timeout in seconds
    user_agent: str = "swcache/0.1"

    def __post_init__(self) -> None:
        if self.timeout < 1:
            raise ConfigError(f"Network timeout must be at least 1 second (got {self.timeout})")
        if not self.user_agent:
            raise ConfigError("User-Agent cannot be empty")


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the HTTP proxy front end."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    allowed_hosts: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Proxy port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    worker: WorkerConfig = field(default_factory=WorkerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    assets: AssetsConfig = field(default_factory=AssetsConfig)
    routes: RoutesConfig = field(default_factory=RoutesConfig)
    offline: OfflineConfig = field(default_factory=OfflineConfig)
    expiration: dict[str, ExpirationPolicy] = field(default_factory=dict)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)

    def __post_init__(self) -> None:
        unknown = set(self.expiration) - set(PARTITION_KINDS)
        if unknown:
            raise ConfigError(f"Unknown partition kinds in expiration: {sorted(unknown)}")


def _parse_str_list(data: object, section: str) -> tuple[str, ...]:
    if not isinstance(data, list):
        raise ConfigError(f"'{section}' must be a list")
    return tuple(str(item) for item in data)


def _parse_worker_config(data: dict | None) -> WorkerConfig:
    """Parse worker configuration section."""
    if data is None:
        return WorkerConfig()
    if not isinstance(data, dict):
        raise ConfigError("'worker' section must be a dictionary")

    return WorkerConfig(
        version=str(data.get("version", AUTO_VERSION)),
        cache_prefix=str(data.get("cache_prefix", "")),
        origin=str(data.get("origin", "http://localhost:8000")).rstrip("/"),
        skip_waiting=bool(data.get("skip_waiting", True)),
        refresh_interval=int(data.get("refresh_interval", 0)),
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(path=os.path.expanduser(str(data.get("path", DEFAULT_STORAGE_PATH))))


def _parse_assets_config(data: dict | None) -> AssetsConfig:
    """Parse assets configuration section."""
    if data is None:
        return AssetsConfig()
    if not isinstance(data, dict):
        raise ConfigError("'assets' section must be a dictionary")

    local = data.get("local")
    external = data.get("external")
    return AssetsConfig(
        local=_parse_str_list(local, "assets.local") if local is not None else DEFAULT_LOCAL_ASSETS,
        external=_parse_str_list(external, "assets.external") if external is not None else (),
    )


def _parse_routes_config(data: dict | None) -> RoutesConfig:
    """Parse routes configuration section."""
    if data is None:
        return RoutesConfig()
    if not isinstance(data, dict):
        raise ConfigError("'routes' section must be a dictionary")

    network_first = data.get("network_first")
    cache_first = data.get("cache_first")
    return RoutesConfig(
        network_first=(
            _parse_str_list(network_first, "routes.network_first")
            if network_first is not None
            else DEFAULT_NETWORK_FIRST
        ),
        cache_first=(
            _parse_str_list(cache_first, "routes.cache_first") if cache_first is not None else DEFAULT_CACHE_FIRST
        ),
    )


def _parse_offline_config(data: dict | None) -> OfflineConfig:
    """Parse offline configuration section."""
    if data is None:
        return OfflineConfig()
    if not isinstance(data, dict):
        raise ConfigError("'offline' section must be a dictionary")

    messages = dict(DEFAULT_OFFLINE_MESSAGES)
    messages_data = data.get("messages")
    if messages_data is not None:
        if not isinstance(messages_data, dict):
            raise ConfigError("'offline.messages' must be a dictionary")
        messages.update({str(lang): str(text) for lang, text in messages_data.items()})

    return OfflineConfig(
        root_document=str(data.get("root_document", "/index.html")),
        placeholder_image=str(data.get("placeholder_image", "/icons/icon-192x192.png")),
        default_language=str(data.get("default_language", "en")),
        messages=messages,
    )


def _parse_expiration_config(data: dict | None) -> dict[str, ExpirationPolicy]:
    """Parse expiration configuration section (kind -> policy)."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("'expiration' section must be a dictionary")

    policies: dict[str, ExpirationPolicy] = {}
    for kind, policy_data in data.items():
        if not isinstance(policy_data, dict):
            raise ConfigError(f"Expiration policy for '{kind}' must be a dictionary")
        max_entries = policy_data.get("max_entries")
        max_age_seconds = policy_data.get("max_age_seconds")
        policies[str(kind)] = ExpirationPolicy(
            max_entries=int(max_entries) if max_entries is not None else None,
            max_age_seconds=int(max_age_seconds) if max_age_seconds is not None else None,
        )
    return policies


def _parse_network_config(data: dict | None) -> NetworkConfig:
    """Parse network configuration section."""
    if data is None:
        return NetworkConfig()
    if not isinstance(data, dict):
        raise ConfigError("'network' section must be a dictionary")

    return NetworkConfig(
        timeout=int(data.get("timeout", 10)),
        user_agent=str(data.get("user_agent", "swcache/0.1")),
    )


def _parse_proxy_config(data: dict | None) -> ProxyConfig:
    """Parse proxy configuration section."""
    if data is None:
        return ProxyConfig()
    if not isinstance(data, dict):
        raise ConfigError("'proxy' section must be a dictionary")

    allowed_hosts = data.get("allowed_hosts")
    return ProxyConfig(
        enabled=bool(data.get("enabled", True)),
        host=str(data.get("host", "127.0.0.1")),
        port=int(data.get("port", 8080)),
        allowed_hosts=_parse_str_list(allowed_hosts, "proxy.allowed_hosts") if allowed_hosts is not None else (),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SWCACHE_VERSION: Override worker.version
    - SWCACHE_ORIGIN: Override worker.origin
    - SWCACHE_REFRESH_INTERVAL: Override worker.refresh_interval
    - SWCACHE_STORAGE_PATH: Override storage.path
    - SWCACHE_PROXY_PORT: Override proxy.port
    - SWCACHE_PROXY_ENABLED: Override proxy.enabled (true/false)
    - SWCACHE_NETWORK_TIMEOUT: Override network.timeout
    """
    for section in ("worker", "storage", "proxy", "network"):
        if config_data.get(section) is None:
            config_data[section] = {}

    version = os.environ.get("SWCACHE_VERSION")
    if version is not None:
        config_data["worker"]["version"] = version

    origin = os.environ.get("SWCACHE_ORIGIN")
    if origin is not None:
        config_data["worker"]["origin"] = origin

    refresh_interval = os.environ.get("SWCACHE_REFRESH_INTERVAL")
    if refresh_interval is not None:
        config_data["worker"]["refresh_interval"] = int(refresh_interval)

    storage_path = os.environ.get("SWCACHE_STORAGE_PATH")
    if storage_path is not None:
        config_data["storage"]["path"] = storage_path

    proxy_port = os.environ.get("SWCACHE_PROXY_PORT")
    if proxy_port is not None:
        config_data["proxy"]["port"] = int(proxy_port)

    proxy_enabled = os.environ.get("SWCACHE_PROXY_ENABLED")
    if proxy_enabled is not None:
        config_data["proxy"]["enabled"] = proxy_enabled.lower() in ("true", "1", "yes")

    network_timeout = os.environ.get("SWCACHE_NETWORK_TIMEOUT")
    if network_timeout is not None:
        config_data["network"]["timeout"] = int(network_timeout)

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid environment override: {e}")

    try:
        return Config(
            worker=_parse_worker_config(data.get("worker")),
            storage=_parse_storage_config(data.get("storage")),
            assets=_parse_assets_config(data.get("assets")),
            routes=_parse_routes_config(data.get("routes")),
            offline=_parse_offline_config(data.get("offline")),
            expiration=_parse_expiration_config(data.get("expiration")),
            network=_parse_network_config(data.get("network")),
            proxy=_parse_proxy_config(data.get("proxy")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
