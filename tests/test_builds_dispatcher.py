"""Tests for the build dispatcher."""

import tarfile
from io import BytesIO
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from kata_static.builds.dispatcher import BuildDispatcher
from kata_static.builds.handlers import ComponentHandler
from kata_static.builds.runner import BuilderFailure
from kata_static.cache.client import CacheClient, CacheLookup
from kata_static.config import Settings
from kata_static.fingerprint import manifest
from kata_static.types import BuildSession, BuildTarget, TargetStatus
from kata_static.versions import VersionSources


def _tarball(files: dict[str, bytes]) -> bytes:
    buffer = BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:xz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(data)
            tar.addfile(info, BytesIO(data))
    return buffer.getvalue()


NYDUS = ComponentHandler(
    name="nydus",
    component="nydus",
    script="tools/packaging/static-build/nydus/build.sh",
    facts=(manifest("externals.nydus.version"),),
    cache_job="kata-containers-main-nydus-{arch}",
    overrides={"dm_verity": True},
)


@pytest.fixture
def cache() -> MagicMock:
    """A cache client mock that misses by default."""
    client = MagicMock(spec=CacheClient)
    client.enabled = True
    client.try_fetch.return_value = CacheLookup(hit=False, component="nydus", reason="miss")
    return client


@pytest.fixture
def session(settings: Settings) -> BuildSession:
    """Working state for the nydus target."""
    target_dir = settings.build_root / "nydus"
    session = BuildSession(
        target=BuildTarget.NYDUS,
        destdir=target_dir / "destdir",
        builddir=target_dir / "builddir",
        final_archive=settings.workdir / "kata-static-nydus.tar.xz",
    )
    session.destdir.mkdir(parents=True)
    session.builddir.mkdir(parents=True)
    return session


@pytest.fixture
def dispatcher(settings: Settings, sources: VersionSources, cache: MagicMock) -> BuildDispatcher:
    """Dispatcher over a one-target registry."""
    return BuildDispatcher(settings, sources, cache, registry={BuildTarget.NYDUS: NYDUS})


class TestBuildDispatcher:
    """Tests for BuildDispatcher.build."""

    def test_cache_hit_keeps_cached_tarball(
        self, dispatcher: BuildDispatcher, cache: MagicMock, session: BuildSession
    ) -> None:
        """A hit becomes the final tarball without repackaging."""
        cached = _tarball({"./opt/kata/libexec/nydusd": b"cached"})

        def fake_fetch(component, base_url, fingerprint, image, dest_path, **kwargs):
            dest_path.write_bytes(cached)
            return CacheLookup(hit=True, component=component)

        cache.try_fetch.side_effect = fake_fetch
        with patch("kata_static.builds.handlers.run_builder") as mock_run:
            result = dispatcher.build(session)

        mock_run.assert_not_called()
        assert result.status == TargetStatus.SUCCEEDED
        assert result.cache_hit is True
        assert session.final_archive.read_bytes() == cached

    def test_miss_builds_and_assembles(
        self, dispatcher: BuildDispatcher, session: BuildSession
    ) -> None:
        """A miss runs the builder and packages the InstallTree."""

        def fake_build(invocation, output=None, timeout=None):
            binary = Path(invocation.env["DESTDIR"]) / "opt" / "kata" / "libexec" / "nydusd"
            binary.parent.mkdir(parents=True)
            binary.write_bytes(b"built")

        with patch("kata_static.builds.handlers.run_builder", side_effect=fake_build):
            result = dispatcher.build(session)

        assert result.cache_hit is False
        assert result.archive_path == session.final_archive
        with tarfile.open(session.final_archive) as tar:
            assert "./opt/kata/libexec/nydusd" in tar.getnames()

    def test_target_overrides_applied(
        self, dispatcher: BuildDispatcher, session: BuildSession
    ) -> None:
        """The builder sees the target's forced settings."""
        with patch("kata_static.builds.handlers.run_builder") as mock_run:
            dispatcher.build(session)

        assert mock_run.call_args.args[0].env["DM_VERITY"] == "yes"
        assert dispatcher.settings.dm_verity is False

    def test_builder_failure_propagates(
        self, dispatcher: BuildDispatcher, session: BuildSession
    ) -> None:
        """Builder failures reach the caller and no tarball is written."""
        with patch(
            "kata_static.builds.handlers.run_builder",
            side_effect=BuilderFailure("boom", exit_code=1),
        ):
            with pytest.raises(BuilderFailure):
                dispatcher.build(session)

        assert not session.final_archive.exists()
