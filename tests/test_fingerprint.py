"""Tests for fingerprint computation."""

import pytest

from kata_static.config import Settings
from kata_static.fingerprint import (
    FINGERPRINT_SEPARATOR,
    Fact,
    builder_image,
    compute_fingerprint,
    digest,
    file_contents,
    literal,
    manifest,
    resolve_fact,
    resolve_facts,
    setting,
    source,
    toolchain,
)
from kata_static.types import FactKind
from kata_static.versions import VersionLookupError, VersionSources


class TestComputeFingerprint:
    """Tests for compute_fingerprint function."""

    def test_joins_values_in_order(self) -> None:
        """Fact values are joined with the separator, in order."""
        facts = [
            Fact(FactKind.MANIFEST, "v6.1.38"),
            Fact(FactKind.FILE, "109"),
            Fact(FactKind.SOURCE, "c0ffee"),
        ]
        assert compute_fingerprint(facts) == "v6.1.38-109-c0ffee"

    def test_deterministic(self) -> None:
        """The same facts give the same fingerprint."""
        facts = [Fact(FactKind.MANIFEST, "1.0"), Fact(FactKind.LITERAL, "image")]
        assert compute_fingerprint(facts) == compute_fingerprint(list(facts))

    def test_sensitive_to_each_fact(self) -> None:
        """Changing any single fact changes the fingerprint."""
        base = [Fact(FactKind.MANIFEST, "1.0"), Fact(FactKind.TOOLCHAIN, "1.69")]
        changed = [Fact(FactKind.MANIFEST, "1.0"), Fact(FactKind.TOOLCHAIN, "1.70")]
        assert compute_fingerprint(base) != compute_fingerprint(changed)

    def test_order_matters(self) -> None:
        """Reordering facts changes the fingerprint."""
        a = Fact(FactKind.MANIFEST, "a")
        b = Fact(FactKind.MANIFEST, "b")
        assert compute_fingerprint([a, b]) != compute_fingerprint([b, a])

    def test_naive_join_can_collide(self) -> None:
        """Values containing the separator can collide."""
        first = [Fact(FactKind.LITERAL, "a-b"), Fact(FactKind.LITERAL, "c")]
        second = [Fact(FactKind.LITERAL, "a"), Fact(FactKind.LITERAL, "b-c")]
        assert FINGERPRINT_SEPARATOR == "-"
        assert compute_fingerprint(first) == compute_fingerprint(second)

    def test_custom_separator(self) -> None:
        """A custom separator can be used."""
        facts = [Fact(FactKind.LITERAL, "a"), Fact(FactKind.LITERAL, "b")]
        assert compute_fingerprint(facts, separator="|") == "a|b"


class TestResolveFact:
    """Tests for resolve_fact function."""

    def test_manifest_fact(self, sources: VersionSources, settings: Settings) -> None:
        """Manifest facts read the versions manifest."""
        fact = resolve_fact(manifest("assets.kernel.version"), sources, settings)
        assert fact == Fact(FactKind.MANIFEST, "v6.1.38")

    def test_toolchain_fact(self, sources: VersionSources, settings: Settings) -> None:
        """Toolchain facts read the versions manifest."""
        fact = resolve_fact(toolchain("languages.rust.meta.newest-version"), sources, settings)
        assert fact.value == "1.69"

    def test_source_fact(self, sources: VersionSources, settings: Settings) -> None:
        """Source facts use the last commit of the subtree."""
        fact = resolve_fact(source("src/agent"), sources, settings)
        assert fact.value == "c0ffee"

    def test_file_fact(self, sources: VersionSources, settings: Settings) -> None:
        """File facts use the stripped file contents."""
        fact = resolve_fact(
            file_contents("tools/packaging/kernel/kata_config_version"), sources, settings
        )
        assert fact.value == "109"

    def test_digest_fact(self, sources: VersionSources, settings: Settings) -> None:
        """Digest facts hash the subtree contents."""
        fact = resolve_fact(digest("tools/packaging/kernel"), sources, settings)
        assert len(fact.value) == 64

    def test_image_fact(self, sources: VersionSources, settings: Settings) -> None:
        """Image facts use the builder image name."""
        fact = resolve_fact(builder_image("tools/packaging/static-build/initramfs"), sources, settings)
        assert fact.value == "quay.io/kata-containers/builders:initramfs-c0ffee-x86_64"

    def test_setting_fact(self, sources: VersionSources, settings: Settings) -> None:
        """Setting facts read the effective settings."""
        configured = settings.with_overrides(aa_kbc="cc_kbc_tdx")
        assert resolve_fact(setting("aa_kbc"), sources, configured).value == "cc_kbc_tdx"

    def test_unset_setting_fact_is_empty(self, sources: VersionSources, settings: Settings) -> None:
        """Unset settings resolve to an empty value."""
        assert resolve_fact(setting("aa_kbc"), sources, settings).value == ""

    def test_literal_fact(self, sources: VersionSources, settings: Settings) -> None:
        """Literal facts resolve to themselves."""
        assert resolve_fact(literal("initrd"), sources, settings).value == "initrd"

    def test_missing_manifest_key(self, sources: VersionSources, settings: Settings) -> None:
        """A missing manifest key is an error."""
        with pytest.raises(VersionLookupError) as exc_info:
            resolve_fact(manifest("assets.nope.version"), sources, settings)
        assert exc_info.value.code == "manifest_key_missing"


class TestResolveFacts:
    """Tests for resolve_facts function."""

    def test_preserves_order(self, sources: VersionSources, settings: Settings) -> None:
        """Facts are resolved in declaration order."""
        facts = resolve_facts(
            [literal("image"), manifest("externals.gperf.version"), source("src/libs")],
            sources,
            settings,
        )
        assert [f.value for f in facts] == ["image", "3.1", "c0ffee"]

    def test_fingerprint_follows_manifest_change(
        self, sources: VersionSources, settings: Settings, repo_root
    ) -> None:
        """Bumping a manifest version changes the fingerprint."""
        declarations = [manifest("externals.nydus.version")]
        before = compute_fingerprint(resolve_facts(declarations, sources, settings))

        manifest_path = repo_root / "versions.yaml"
        manifest_path.write_text(manifest_path.read_text().replace("v2.2.1", "v2.2.2"))
        fresh = VersionSources(repo_root, "x86_64", "quay.io/kata-containers/builders")
        after = compute_fingerprint(resolve_facts(declarations, fresh, settings))

        assert before == "v2.2.1"
        assert after == "v2.2.2"


class TestFactSource:
    """Tests for FactSource declarations."""

    def test_describe(self) -> None:
        """describe() names the kind and keys."""
        assert digest("a", "b").describe() == "digest:a,b"
        assert manifest("x.y").describe() == "manifest:x.y"
