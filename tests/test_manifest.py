"""Tests for version and asset manifests."""

import pytest

from swcache.config import AssetsConfig, Config, WorkerConfig
from swcache.manifest import AssetManifest, PartitionName, VersionManifest, build_manifests, compute_version


class TestPartitionName:
    """Tests for partition naming."""

    def test_format_without_prefix(self) -> None:
        """Names are {kind}-{version} without a prefix."""
        assert PartitionName("static", "v2").format() == "static-v2"

    def test_format_with_prefix(self) -> None:
        """A prefix is prepended with a dash."""
        assert PartitionName("runtime", "v2").format("scanner") == "scanner-runtime-v2"

    def test_parse_round_trip(self) -> None:
        """Parsing recovers kind and version."""
        assert PartitionName.parse("dynamic-v1") == PartitionName("dynamic", "v1")
        assert PartitionName.parse("scanner-static-2.0.0", "scanner") == PartitionName("static", "2.0.0")

    def test_parse_rejects_other_namespace(self) -> None:
        """Names outside the prefix are not parsed."""
        assert PartitionName.parse("other-static-v1", "scanner") is None

    def test_parse_rejects_names_without_version(self) -> None:
        """A name without a separator has no identity."""
        assert PartitionName.parse("static") is None


class TestVersionManifest:
    """Tests for VersionManifest."""

    def test_partitions(self) -> None:
        """One partition per kind at the current version."""
        manifest = VersionManifest(version="v2")
        assert manifest.partitions == ["static-v2", "dynamic-v2", "runtime-v2"]

    def test_unknown_kind(self) -> None:
        """Unknown kinds raise KeyError."""
        with pytest.raises(KeyError):
            VersionManifest(version="v2").partition("images")

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("static-v2", True),
            ("runtime-v2", True),
            ("static-v1", False),
            ("images-v2", False),
            ("cdn-cache", False),
        ],
    )
    def test_is_current(self, name: str, expected: bool) -> None:
        """Only known kinds at the current version are current."""
        assert VersionManifest(version="v2").is_current(name) is expected

    def test_owns_everything_without_prefix(self) -> None:
        """Without a prefix every partition is in the namespace."""
        assert VersionManifest(version="v2").owns("whatever")

    def test_owns_only_prefixed_names(self) -> None:
        """With a prefix only prefixed partitions are owned."""
        manifest = VersionManifest(version="v2", prefix="scanner")
        assert manifest.owns("scanner-static-v1")
        assert not manifest.owns("othersite-static-v1")


class TestVersionComputation:
    """Tests for auto-computed versions."""

    def test_is_deterministic(self) -> None:
        """The same manifest gives the same version."""
        assets = AssetManifest(origin="http://app.test", local=("/", "/index.html"))
        assert compute_version(assets) == compute_version(assets)

    def test_changes_with_assets(self) -> None:
        """A changed asset list produces a new version."""
        first = AssetManifest(origin="http://app.test", local=("/",))
        second = AssetManifest(origin="http://app.test", local=("/", "/app.js"))
        assert compute_version(first) != compute_version(second)

    def test_has_no_dash(self) -> None:
        """Computed versions are valid partition versions."""
        version = compute_version(AssetManifest(origin="http://app.test"))
        assert version.startswith("v")
        assert "-" not in version

    def test_build_manifests_auto(self) -> None:
        """Auto version is resolved when building manifests."""
        config = Config(worker=WorkerConfig(version="auto", origin="http://app.test"))
        manifest, assets = build_manifests(config)
        assert manifest.version == compute_version(assets)

    def test_build_manifests_explicit(self) -> None:
        """An explicit version is used as-is."""
        config = Config(
            worker=WorkerConfig(version="v7", cache_prefix="scanner", origin="http://app.test"),
            assets=AssetsConfig(local=("/a.css",), external=("https://cdn.test/lib.js",)),
        )
        manifest, assets = build_manifests(config)
        assert manifest.partition("static") == "scanner-static-v7"
        assert assets.local_urls == ["http://app.test/a.css"]
        assert assets.external_hosts == {"cdn.test"}
