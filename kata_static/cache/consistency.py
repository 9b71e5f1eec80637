"""Root-hash consistency check for the confidential shim cache.

The confidential shim embeds the dm-verity root hash of each measured
rootfs variant at build time. A cached shim tarball is therefore only
usable when the root hashes it was built against are the same ones the
rootfs caches currently publish, and the same ones already present in
the local checkout (if an earlier step produced them).

This coupling is specific to the shim/rootfs pair; it is not a general
dependency mechanism.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from kata_static.cache.client import CacheClient, CacheMiss, DownloadError, cache_job_url

logger = logging.getLogger(__name__)


class ConsistencyRejection(CacheMiss):
    """Raised when root hashes disagree across caches or with local state."""

    default_code = "root_hash_mismatch"


@dataclass(frozen=True)
class RootHashVariant:
    """A measured rootfs variant and the cache job publishing its root hash.

    Attributes:
        name: Variant name (``vanilla``, ``tdx``).
        rootfs_job: CI job name template, ``{arch}`` is substituted.
    """

    name: str
    rootfs_job: str

    @property
    def filename(self) -> str:
        """Name of the root-hash file for this variant."""
        return root_hash_filename(self.name)


def root_hash_filename(variant: str) -> str:
    """Return the root-hash file name of a rootfs variant."""
    return f"root_hash_{variant}.txt"


ROOT_HASH_VARIANTS: tuple[RootHashVariant, ...] = (
    RootHashVariant("vanilla", "kata-containers-2.0-rootfs-image-cc-{arch}"),
    RootHashVariant("tdx", "kata-containers-2.0-rootfs-image-tdx-cc-{arch}"),
)


@dataclass
class ConsistencyResult:
    """Outcome of a root-hash consistency check."""

    accepted: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.accepted


class RootHashValidator:
    """Cross-checks root hashes between rootfs caches, shim cache and checkout.

    Args:
        client: Cache client used for the downloads.
        cache_url: Base URL of the CI server.
        arch: Target architecture.
        local_dir: Directory holding the local root-hash files.
        variants: Rootfs variants to check.
    """

    def __init__(
        self,
        client: CacheClient,
        cache_url: str,
        arch: str,
        local_dir: Path,
        variants: Sequence[RootHashVariant] = ROOT_HASH_VARIANTS,
    ) -> None:
        self.client = client
        self.cache_url = cache_url
        self.arch = arch
        self.local_dir = local_dir
        self.variants = tuple(variants)

    @property
    def filenames(self) -> list[str]:
        """Root-hash file names, one per variant."""
        return [variant.filename for variant in self.variants]

    def _fetch(self, url: str, dest: Path) -> bytes:
        try:
            self.client.download(url, dest)
        except DownloadError as e:
            raise CacheMiss(f"Cannot fetch root hash {url}: {e}", code="root_hash_unavailable") from e
        return dest.read_bytes()

    def _adopt_rootfs_hash(self, variant: RootHashVariant, staging: Path) -> bytes:
        base_url = cache_job_url(self.cache_url, variant.rootfs_job.format(arch=self.arch))
        fetched_path = staging / f"rootfs_{variant.filename}"
        fetched = self._fetch(f"{base_url}/{variant.filename}", fetched_path)

        local_path = self.local_dir / variant.filename
        if local_path.exists():
            if local_path.read_bytes() != fetched:
                # Keep the local file: a local build of the shim must use it
                raise ConsistencyRejection(
                    f"Local {local_path} differs from the {variant.name} rootfs cache",
                    code="local_root_hash_mismatch",
                )
            return fetched

        self.local_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(fetched_path), str(local_path))
        logger.info("Adopted cached %s root hash into %s", variant.name, local_path)
        return fetched

    def _check(self, shim_base_url: str) -> None:
        with tempfile.TemporaryDirectory(prefix="kata-root-hash-") as staging_dir:
            staging = Path(staging_dir)
            adopted = {
                variant.name: self._adopt_rootfs_hash(variant, staging)
                for variant in self.variants
            }
            for variant in self.variants:
                embedded = self._fetch(
                    f"{shim_base_url}/{variant.filename}",
                    staging / f"shim_{variant.filename}",
                )
                if embedded != adopted[variant.name]:
                    raise ConsistencyRejection(
                        f"Shim cache was built against a different {variant.name} root hash",
                        code="shim_root_hash_mismatch",
                    )

    def validate(self, shim_base_url: str) -> ConsistencyResult:
        """Decide whether the shim cache at ``shim_base_url`` can be trusted.

        Args:
            shim_base_url: Artifacts URL of the shim cache.

        Returns:
            ConsistencyResult; rejected results carry the reason.
        """
        try:
            self._check(shim_base_url)
        except CacheMiss as e:
            logger.info("Rejecting cached shim: %s", e)
            return ConsistencyResult(accepted=False, reason=str(e))
        except OSError as e:
            logger.warning("Rejecting cached shim: %s", e)
            return ConsistencyResult(accepted=False, reason=str(e))
        return ConsistencyResult(accepted=True)


__all__ = [
    "ROOT_HASH_VARIANTS",
    "ConsistencyRejection",
    "ConsistencyResult",
    "RootHashValidator",
    "RootHashVariant",
    "root_hash_filename",
]
