"""Version and asset manifests.

The version manifest is the single source of truth for which partitions
make up the current generation. The version tag can be derived from the
asset manifest content, so a changed asset list produces a new generation
without a manual bump.
"""

import hashlib
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

from .config import AUTO_VERSION, PARTITION_KINDS, Config


@dataclass(frozen=True)
class AssetManifest:
    """URLs cached eagerly at install time.

    Attributes:
        origin: Application origin local paths are resolved against.
        local: Origin-relative paths that must all be cached.
        external: Absolute library URLs cached best-effort.
    """

    origin: str
    local: tuple[str, ...] = ()
    external: tuple[str, ...] = ()

    @property
    def local_urls(self) -> list[str]:
        return [urljoin(self.origin + "/", path) for path in self.local]

    @property
    def external_hosts(self) -> set[str]:
        return {urlsplit(url).hostname or "" for url in self.external} - {""}


def compute_version(assets: AssetManifest) -> str:
    """Compute a version tag from the asset manifest content hash."""
    content = "\n".join([assets.origin, *assets.local, "", *assets.external])
    content_hash = hashlib.sha256(content.encode()).hexdigest()[:8]
    return f"v{content_hash}"


@dataclass(frozen=True)
class PartitionName:
    """A partition name split into its (kind, version) identity."""

    kind: str
    version: str

    @classmethod
    def parse(cls, name: str, prefix: str = "") -> "PartitionName | None":
        """Parse "{prefix}-{kind}-{version}" (or "{kind}-{version}" without prefix).

        Returns None for names outside the prefix namespace or without a
        kind/version separator.
        """
        if prefix:
            if not name.startswith(prefix + "-"):
                return None
            name = name[len(prefix) + 1 :]
        kind, sep, version = name.rpartition("-")
        if not sep or not kind or not version:
            return None
        return cls(kind=kind, version=version)

    def format(self, prefix: str = "") -> str:
        base = f"{self.kind}-{self.version}"
        return f"{prefix}-{base}" if prefix else base


@dataclass(frozen=True)
class VersionManifest:
    """Current version tag plus the partition kinds that exist at that tag."""

    version: str
    kinds: tuple[str, ...] = PARTITION_KINDS
    prefix: str = ""

    def partition(self, kind: str) -> str:
        """Name of the current-generation partition for a kind."""
        if kind not in self.kinds:
            raise KeyError(f"Unknown partition kind: {kind}")
        return PartitionName(kind, self.version).format(self.prefix)

    @property
    def partitions(self) -> list[str]:
        return [self.partition(kind) for kind in self.kinds]

    def owns(self, name: str) -> bool:
        """Whether a partition name belongs to this manifest's namespace."""
        if not self.prefix:
            return True
        return name.startswith(self.prefix + "-")

    def is_current(self, name: str) -> bool:
        """Whether a partition name is one of this generation's partitions."""
        parsed = PartitionName.parse(name, self.prefix)
        return parsed is not None and parsed.kind in self.kinds and parsed.version == self.version


def build_manifests(config: Config) -> tuple[VersionManifest, AssetManifest]:
    """Build the version and asset manifests from configuration."""
    assets = AssetManifest(
        origin=config.worker.origin,
        local=config.assets.local,
        external=config.assets.external,
    )
    version = config.worker.version
    if version == AUTO_VERSION:
        version = compute_version(assets)
    return VersionManifest(version=version, prefix=config.worker.cache_prefix), assets
