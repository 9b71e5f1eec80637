"""Version sources feeding component fingerprints.

This module handles:
- Dotted-path lookups into the ``versions.yaml`` dependency manifest
- Last-commit identifiers of repository subtrees (via git)
- Content digests of repository subtrees
- Builder container image names

All lookups are relative to the repository root of the source checkout.
"""

from __future__ import annotations

import hashlib
import logging
import subprocess
from functools import cached_property
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# Dependency manifest, relative to the repository root
VERSIONS_FILE = "versions.yaml"

# Release version file, relative to the repository root
VERSION_FILE = "VERSION"


class VersionLookupError(Exception):
    """Raised when a fingerprint input cannot be resolved."""

    def __init__(self, message: str, code: str = "version_lookup_error") -> None:
        """Initialize VersionLookupError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


def load_manifest(path: Path) -> dict[str, Any]:
    """Load the versions manifest.

    Args:
        path: Path to the YAML manifest.

    Returns:
        Parsed manifest as a dictionary.

    Raises:
        VersionLookupError: If the file is missing or not a YAML mapping.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise VersionLookupError(
            f"Cannot read versions manifest {path}: {e}",
            code="manifest_unreadable",
        ) from e
    except yaml.YAMLError as e:
        raise VersionLookupError(
            f"Invalid YAML in versions manifest {path}: {e}",
            code="manifest_invalid",
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise VersionLookupError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}",
            code="manifest_invalid",
        )
    return data


def lookup_dotted(data: dict[str, Any], path: str) -> Any:
    """Look up a dotted path (``assets.kernel.version``) in nested mappings.

    Args:
        data: Nested mapping.
        path: Dot-separated key path.

    Returns:
        The value at the path.

    Raises:
        KeyError: If any component of the path is missing.
    """
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            raise KeyError(path)
        node = node[part]
    return node


class VersionSources:
    """Resolves version facts for a source checkout.

    Args:
        repo_root: Root of the source checkout.
        arch: Target architecture, used in builder image names.
        builder_registry: Registry hosting the static builder images.
        manifest_path: Override for the versions manifest location.
    """

    def __init__(
        self,
        repo_root: Path,
        arch: str,
        builder_registry: str,
        manifest_path: Path | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.arch = arch
        self.builder_registry = builder_registry
        self.manifest_path = manifest_path or repo_root / VERSIONS_FILE

    @cached_property
    def manifest(self) -> dict[str, Any]:
        """The parsed versions manifest (loaded on first use)."""
        return load_manifest(self.manifest_path)

    def manifest_value(self, path: str) -> str:
        """Return the scalar value at a dotted manifest path.

        Raises:
            VersionLookupError: If the path is missing or not a scalar.
        """
        try:
            value = lookup_dotted(self.manifest, path)
        except KeyError:
            raise VersionLookupError(
                f"{path} not found in {self.manifest_path}",
                code="manifest_key_missing",
            ) from None

        if isinstance(value, (dict, list)) or value is None:
            raise VersionLookupError(
                f"{path} in {self.manifest_path} is not a scalar value",
                code="manifest_key_invalid",
            )
        return str(value)

    def _git(self, *args: str) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.repo_root,
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise VersionLookupError(
                f"git {' '.join(args)} failed: {e.stderr.strip()}",
                code="git_error",
            ) from e
        except OSError as e:
            raise VersionLookupError(
                f"Failed to run git: {e}",
                code="git_error",
            ) from e
        return result.stdout

    def last_modification(self, path: str) -> str:
        """Return the last commit touching ``path``.

        A ``-dirty`` suffix is appended when the working tree has
        uncommitted changes below ``path``. Untracked files count too.

        Args:
            path: Repository-relative path.

        Returns:
            Commit hash, optionally suffixed with ``-dirty``.
        """
        commit = self._git("log", "-1", "--pretty=format:%H", "--", path).strip()
        if not commit:
            raise VersionLookupError(
                f"No commit found touching {path}",
                code="git_no_history",
            )
        status = self._git("status", "--porcelain", "--", path)
        if status.strip():
            logger.debug("Uncommitted changes below %s", path)
            return f"{commit}-dirty"
        return commit

    def tree_digest(self, *paths: str) -> str:
        """Return a SHA-256 digest over the files below ``paths``.

        Each file contributes its own digest and repository-relative path,
        in sorted path order, so renames and content changes both alter
        the result.

        Args:
            *paths: Repository-relative files or directories.

        Returns:
            SHA-256 hex digest.
        """
        files: list[Path] = []
        for rel in paths:
            root = self.repo_root / rel
            if root.is_file():
                files.append(root)
            elif root.is_dir():
                files.extend(p for p in root.rglob("*") if p.is_file())
            else:
                raise VersionLookupError(
                    f"Cannot digest missing path {root}",
                    code="digest_path_missing",
                )

        sha256 = hashlib.sha256()
        for file_path in sorted(files, key=lambda p: p.relative_to(self.repo_root).as_posix()):
            with file_path.open("rb") as f:
                file_hash = hashlib.file_digest(f, "sha256").hexdigest()
            relative = file_path.relative_to(self.repo_root).as_posix()
            sha256.update(f"{file_hash}  {relative}\n".encode())
        return sha256.hexdigest()

    def file_contents(self, path: str) -> str:
        """Return the stripped text of a repository file."""
        file_path = self.repo_root / path
        try:
            return file_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise VersionLookupError(
                f"Cannot read {file_path}: {e}",
                code="file_unreadable",
            ) from e

    def builder_image_name(self, path: str) -> str:
        """Return the builder image name for a static-build directory.

        Args:
            path: Repository-relative directory of the builder.

        Returns:
            ``<registry>:<name>-<last commit>-<arch>``.
        """
        name = Path(path).name
        return f"{self.builder_registry}:{name}-{self.last_modification(path)}-{self.arch}"

    def release_version(self) -> str:
        """Return the release version from the VERSION file."""
        return self.file_contents(VERSION_FILE)


__all__ = [
    "VERSIONS_FILE",
    "VERSION_FILE",
    "VersionLookupError",
    "VersionSources",
    "load_manifest",
    "lookup_dotted",
]
