"""Tests for final tarball assembly."""

import hashlib
import os
from pathlib import Path

import pytest

from kata_static.builds.assembler import (
    AssemblyError,
    assemble,
    checksum_path,
    final_archive_name,
    list_archive,
)


@pytest.fixture
def install_dir(tmp_path: Path) -> Path:
    """A populated InstallTree."""
    root = tmp_path / "destdir"
    binary = root / "opt" / "kata" / "bin" / "firecracker"
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"firecracker")
    return root


class TestFinalArchiveName:
    """Tests for final_archive_name function."""

    def test_name(self) -> None:
        """Tarballs are named after the target."""
        assert final_archive_name("shim-v2") == "kata-static-shim-v2.tar.xz"


class TestAssemble:
    """Tests for assemble function."""

    def test_creates_tarball(self, install_dir: Path, tmp_path: Path) -> None:
        """The InstallTree is packaged relative to its root."""
        archive = tmp_path / "kata-static-firecracker.tar.xz"

        result = assemble(install_dir, archive)

        assert result.created
        assert archive.is_file()
        assert "./opt/kata/bin/firecracker" in result.members
        assert result.members == list_archive(archive)

    def test_writes_checksum_sidecar(self, install_dir: Path, tmp_path: Path) -> None:
        """A sha256sum file is written next to the tarball."""
        archive = tmp_path / "kata-static-firecracker.tar.xz"
        assemble(install_dir, archive)

        sidecar = checksum_path(archive)
        expected = hashlib.sha256(archive.read_bytes()).hexdigest()
        assert sidecar.name == "sha256sum-kata-static-firecracker.tar.xz"
        assert sidecar.read_text() == f"{expected}  {archive.name}\n"

    def test_existing_tarball_untouched(self, install_dir: Path, tmp_path: Path) -> None:
        """An existing tarball is neither rewritten nor touched."""
        archive = tmp_path / "kata-static-firecracker.tar.xz"
        assemble(install_dir, archive)
        os.utime(archive, (1_000_000, 1_000_000))
        before = archive.read_bytes()

        (install_dir / "opt" / "kata" / "bin" / "extra").write_bytes(b"new")
        result = assemble(install_dir, archive)

        assert not result.created
        assert archive.stat().st_mtime == 1_000_000
        assert archive.read_bytes() == before
        assert "./opt/kata/bin/extra" not in result.members

    def test_existing_tarball_gets_sidecar(self, install_dir: Path, tmp_path: Path) -> None:
        """A tarball placed from cache gets its checksum file."""
        archive = tmp_path / "kata-static-firecracker.tar.xz"
        assemble(install_dir, archive)
        checksum_path(archive).unlink()

        assemble(install_dir, archive)

        assert checksum_path(archive).is_file()

    def test_missing_install_dir(self, tmp_path: Path) -> None:
        """Assembly without an InstallTree fails."""
        with pytest.raises(AssemblyError) as exc_info:
            assemble(tmp_path / "missing", tmp_path / "out.tar.xz")
        assert exc_info.value.code == "missing_install_dir"

    def test_no_partial_file_left(self, install_dir: Path, tmp_path: Path) -> None:
        """Only the tarball and its sidecar remain in the output directory."""
        out = tmp_path / "out"
        assemble(install_dir, out / "kata-static-firecracker.tar.xz")

        assert sorted(p.name for p in out.iterdir()) == [
            "kata-static-firecracker.tar.xz",
            "sha256sum-kata-static-firecracker.tar.xz",
        ]


class TestListArchive:
    """Tests for list_archive function."""

    def test_unreadable(self, tmp_path: Path) -> None:
        """Unreadable tarballs raise AssemblyError."""
        bad = tmp_path / "bad.tar.xz"
        bad.write_bytes(b"junk")
        with pytest.raises(AssemblyError) as exc_info:
            list_archive(bad)
        assert exc_info.value.code == "unreadable_archive"
