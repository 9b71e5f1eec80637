"""Final tarball assembly.

This module handles:
- Packaging a populated InstallTree into the target's tarball
- Leaving an already present tarball untouched (cache hit or builder-made)
- Writing the sha256 sidecar published next to every tarball
- Listing a tarball's table of contents
"""

from __future__ import annotations

import logging
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from kata_static.cache.client import CHECKSUM_PREFIX, compute_file_sha256

logger = logging.getLogger(__name__)


class AssemblyError(Exception):
    """Raised when the final tarball cannot be written."""

    def __init__(self, message: str, code: str = "assembly_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class AssemblyResult:
    """Result of assembling a target tarball.

    Attributes:
        archive_path: Path of the tarball.
        created: False when the tarball already existed.
        members: Table of contents of the tarball.
    """

    archive_path: Path
    created: bool
    members: list[str] = field(default_factory=list)


def final_archive_name(target: str) -> str:
    """Return the tarball name of a target."""
    return f"kata-static-{target}.tar.xz"


def list_archive(archive_path: Path) -> list[str]:
    """Return the member names of a tarball.

    Raises:
        AssemblyError: If the tarball cannot be read.
    """
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            return tar.getnames()
    except (tarfile.TarError, OSError) as e:
        raise AssemblyError(
            f"Cannot read {archive_path}: {e}",
            code="unreadable_archive",
        ) from e


def checksum_path(archive_path: Path) -> Path:
    """Return the path of a tarball's sha256 sidecar."""
    return archive_path.with_name(f"{CHECKSUM_PREFIX}{archive_path.name}")


def write_checksum_file(archive_path: Path) -> Path:
    """Write ``sha256sum-<name>`` next to a tarball in sha256sum format."""
    checksum = compute_file_sha256(archive_path)
    path = checksum_path(archive_path)
    path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    return path


def assemble(install_dir: Path, archive_path: Path) -> AssemblyResult:
    """Package ``install_dir`` into ``archive_path`` unless it already exists.

    The tarball is written under a temporary name in the same directory
    and renamed into place, so the well-known path never holds a partial
    file.

    Args:
        install_dir: Populated InstallTree root.
        archive_path: Well-known tarball path of the target.

    Returns:
        AssemblyResult for the tarball.

    Raises:
        AssemblyError: If the InstallTree is missing or writing fails.
    """
    if archive_path.exists():
        logger.info("Tarball %s already present, not repackaging", archive_path)
        if not checksum_path(archive_path).exists():
            write_checksum_file(archive_path)
        return AssemblyResult(
            archive_path=archive_path,
            created=False,
            members=list_archive(archive_path),
        )

    if not install_dir.is_dir():
        raise AssemblyError(
            f"Install directory does not exist: {install_dir}",
            code="missing_install_dir",
        )

    archive_path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=archive_path.parent, prefix=f".{archive_path.name}.", suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        with tarfile.open(tmp_path, "w:xz") as tar:
            tar.add(install_dir, arcname=".")
        tmp_path.replace(archive_path)
    except (tarfile.TarError, OSError) as e:
        tmp_path.unlink(missing_ok=True)
        raise AssemblyError(
            f"Failed to write {archive_path}: {e}",
            code="write_error",
        ) from e

    write_checksum_file(archive_path)
    members = list_archive(archive_path)
    logger.info("Wrote %s (%d entries)", archive_path, len(members))
    return AssemblyResult(archive_path=archive_path, created=True, members=members)


__all__ = [
    "AssemblyError",
    "AssemblyResult",
    "assemble",
    "checksum_path",
    "final_archive_name",
    "list_archive",
    "write_checksum_file",
]
