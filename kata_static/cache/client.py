"""Remote component cache client.

This module handles:
- Reading the ``latest`` / ``latest_image`` pointers of a cache entry
- Downloading a cached tarball with checksum verification
- Fetching auxiliary artifacts (root-hash files) alongside the tarball
- Safe extraction of downloaded tarballs

A cache lookup never fails the build: every problem (unreachable server,
stale pointer, bad checksum, missing auxiliary file) is reported as a
miss and the caller falls back to building the component.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

# Path of the published artifacts below a CI job URL
CACHED_ARTIFACTS_PATH = "lastSuccessfulBuild/artifact/artifacts"

# Pointer holding the fingerprint of the cached tarball
FINGERPRINT_POINTER = "latest"

# Pointer holding the builder image name used for the cached tarball
IMAGE_NAME_POINTER = "latest_image"

# Prefix of the checksum file published next to every tarball
CHECKSUM_PREFIX = "sha256sum-"

# Timeout for pointer and checksum requests (seconds)
REQUEST_TIMEOUT = 30

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


class CacheError(Exception):
    """Base class of cache errors; ``code`` names the failure."""

    default_code = "cache_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class CacheMiss(CacheError):
    """Raised inside a lookup when the cached entry cannot be used."""

    default_code = "cache_miss"


class DownloadError(CacheError):
    """Raised when a cache request fails."""

    default_code = "download_error"


class VerificationError(CacheError):
    """Raised when a downloaded file does not match its checksum."""

    default_code = "verification_error"


class ExtractionError(CacheError):
    """Raised when a tarball cannot be unpacked."""

    default_code = "extraction_error"


@dataclass
class DownloadResult:
    """Result of a file download."""

    path: Path
    checksum: str
    size_bytes: int


@dataclass
class CacheLookup:
    """Outcome of a cache lookup.

    Attributes:
        hit: Whether the cached tarball was installed.
        component: Component name the lookup was for.
        reason: Why the lookup missed (None on hit).
        code: Machine-readable miss reason.
    """

    hit: bool
    component: str
    reason: str | None = None
    code: str | None = None

    def __bool__(self) -> bool:
        return self.hit


def cache_job_url(cache_url: str, job: str) -> str:
    """Return the artifacts URL of a CI job.

    Args:
        cache_url: Base URL of the CI server.
        job: Job name.

    Returns:
        URL under which the job's artifacts are published.
    """
    return f"{cache_url.rstrip('/')}/job/{job}/{CACHED_ARTIFACTS_PATH}"


def parse_sha256sums(content: str, filename: str) -> str | None:
    """Parse ``sha256sum`` output to find the checksum of a file.

    Args:
        content: Content of the checksum file.
        filename: Filename to look up.

    Returns:
        SHA256 checksum string, or None if not found.
    """
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(maxsplit=1)
        if len(parts) != 2:
            continue

        checksum, name = parts
        # Remove leading '*' if present (binary mode indicator)
        name = name.lstrip("*").strip()

        if Path(name).name == filename:
            return checksum.lower()

    return None


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def fetch_text(
    client: httpx.Client,
    url: str,
    timeout: float = REQUEST_TIMEOUT,
) -> str:
    """Fetch a small text resource.

    Args:
        client: HTTPX client instance.
        url: URL to fetch.
        timeout: Request timeout in seconds.

    Returns:
        Response body as text.

    Raises:
        DownloadError: If the request fails.
    """
    logger.debug("Fetching %s", url)

    try:
        response = client.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        return response.text

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error fetching {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout fetching {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error fetching {url}: {e}",
            code="network_error",
        ) from e


def fetch_pointer(
    client: httpx.Client,
    url: str,
    timeout: float = REQUEST_TIMEOUT,
) -> str:
    """Fetch a cache pointer and return its first whitespace-separated token.

    Args:
        client: HTTPX client instance.
        url: Pointer URL.
        timeout: Request timeout in seconds.

    Returns:
        Pointer value ("" for an empty pointer).

    Raises:
        DownloadError: If the request fails.
    """
    tokens = fetch_text(client, url, timeout=timeout).split()
    return tokens[0] if tokens else ""


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
        VerificationError: If checksum verification fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    try:
        with client.stream("GET", url, timeout=timeout, follow_redirects=True) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

    except httpx.HTTPStatusError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        dest_path.unlink(missing_ok=True)
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e

    computed_checksum = sha256.hexdigest()

    if expected_checksum and computed_checksum != expected_checksum.lower():
        # Remove the corrupted file
        dest_path.unlink(missing_ok=True)
        raise VerificationError(
            f"Checksum mismatch for {url}: "
            f"expected {expected_checksum}, got {computed_checksum}"
        )

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        size_bytes=total_bytes,
    )


def extract_archive(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a component tarball into a directory.

    Args:
        archive_path: Path to the tarball (any compression tarfile reads).
        dest_dir: Destination directory for extraction.

    Returns:
        The destination directory.

    Raises:
        ExtractionError: If extraction fails or a member escapes dest_dir.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)

    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar.getmembers():
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ExtractionError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            tar.extractall(dest_dir, filter="tar")

    except tarfile.TarError as e:
        raise ExtractionError(
            f"Failed to extract {archive_path}: {e}",
            code="tar_error",
        ) from e
    except OSError as e:
        raise ExtractionError(
            f"OS error extracting {archive_path}: {e}",
            code="os_error",
        ) from e

    return dest_dir


class CacheClient:
    """Client for the per-component remote tarball cache.

    Args:
        http: HTTPX client used for every request.
        enabled: When False every lookup misses without network access.
        request_timeout: Timeout for pointer/checksum requests (seconds).
        download_timeout: Timeout for tarball downloads (seconds).
    """

    def __init__(
        self,
        http: httpx.Client,
        enabled: bool = True,
        request_timeout: float = REQUEST_TIMEOUT,
        download_timeout: float = DOWNLOAD_TIMEOUT,
    ) -> None:
        self.http = http
        self.enabled = enabled
        self.request_timeout = request_timeout
        self.download_timeout = download_timeout

    def fetch_text(self, url: str) -> str:
        """Fetch a small text resource with the client's timeout."""
        return fetch_text(self.http, url, timeout=self.request_timeout)

    def download(self, url: str, dest_path: Path) -> DownloadResult:
        """Download a file with the client's download timeout."""
        return download_file(self.http, url, dest_path, timeout=self.download_timeout)

    def _check_pointers(
        self,
        base_url: str,
        expected_fingerprint: str,
        expected_image_name: str | None,
    ) -> None:
        try:
            cached_fingerprint = fetch_pointer(
                self.http,
                f"{base_url}/{FINGERPRINT_POINTER}",
                timeout=self.request_timeout,
            )
            cached_image_name = None
            if expected_image_name:
                cached_image_name = fetch_pointer(
                    self.http,
                    f"{base_url}/{IMAGE_NAME_POINTER}",
                    timeout=self.request_timeout,
                )
        except DownloadError as e:
            raise CacheMiss(f"Cache pointers unavailable: {e}", code="pointer_unavailable") from e

        if expected_image_name and cached_image_name != expected_image_name:
            raise CacheMiss(
                f"Cached image name {cached_image_name!r} != {expected_image_name!r}",
                code="image_name_mismatch",
            )
        if cached_fingerprint != expected_fingerprint:
            raise CacheMiss(
                f"Cached fingerprint {cached_fingerprint!r} != {expected_fingerprint!r}",
                code="fingerprint_mismatch",
            )

    def _download_verified(self, base_url: str, name: str, staging: Path) -> Path:
        checksum_name = f"{CHECKSUM_PREFIX}{name}"
        checksums = self.fetch_text(f"{base_url}/{checksum_name}")
        expected = parse_sha256sums(checksums, name)
        if not expected:
            raise CacheMiss(f"No checksum for {name} in {checksum_name}", code="checksum_missing")

        return download_file(
            self.http,
            f"{base_url}/{name}",
            staging / name,
            expected_checksum=expected,
            timeout=self.download_timeout,
        ).path

    def _publish(
        self,
        staging: Path,
        archive: Path,
        dest_path: Path,
        fetched_aux: Sequence[Path],
        aux_dir: Path | None,
    ) -> None:
        """Move staged files into place.

        The archive goes first. Auxiliary files replaced before a failing
        move are restored from a copy kept in ``staging``, so ``aux_dir``
        is left as it was.
        """
        shutil.move(str(archive), str(dest_path))
        if aux_dir is None or not fetched_aux:
            return

        aux_dir.mkdir(parents=True, exist_ok=True)
        previous_dir = staging / "previous"
        previous_dir.mkdir()
        replaced: list[Path] = []
        try:
            for aux_path in fetched_aux:
                target = aux_dir / aux_path.name
                if target.exists():
                    shutil.copy2(target, previous_dir / aux_path.name)
                replaced.append(target)
                shutil.move(str(aux_path), str(target))
        except OSError:
            for target in replaced:
                previous = previous_dir / target.name
                if previous.exists():
                    shutil.move(str(previous), str(target))
                else:
                    target.unlink(missing_ok=True)
            raise

    def try_fetch(
        self,
        component: str,
        base_url: str,
        expected_fingerprint: str,
        expected_image_name: str | None,
        dest_path: Path,
        aux_artifacts: Sequence[str] = (),
        aux_dir: Path | None = None,
    ) -> CacheLookup:
        """Install a cached tarball if the cache matches the expected versions.

        Everything is downloaded into a private staging directory next to
        ``dest_path``; files are moved into place only once every download
        and verification succeeded, so a miss never leaves partial files in
        ``dest_path`` or ``aux_dir``.

        Args:
            component: Component name (for logging).
            base_url: Artifacts URL of the component's cache.
            expected_fingerprint: Fingerprint the cached tarball must carry.
            expected_image_name: Builder image name the cached tarball must
                                 carry (None or "" skips the check).
            dest_path: Where the tarball is placed on a hit.
            aux_artifacts: Names of auxiliary files to fetch alongside.
            aux_dir: Where auxiliary files are placed on a hit.

        Returns:
            CacheLookup describing the outcome.
        """
        if not self.enabled:
            logger.debug("Cache disabled, not looking up %s", component)
            return CacheLookup(hit=False, component=component, reason="cache disabled", code="disabled")

        if aux_artifacts and aux_dir is None:
            raise ValueError("aux_dir is required when aux_artifacts are requested")

        dest_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._check_pointers(base_url, expected_fingerprint, expected_image_name)

            logger.info("Using cached tarball of %s", component)
            with tempfile.TemporaryDirectory(
                dir=dest_path.parent, prefix=".cache-staging-"
            ) as staging_dir:
                staging = Path(staging_dir)
                archive = self._download_verified(base_url, dest_path.name, staging)

                fetched_aux: list[Path] = []
                for name in aux_artifacts:
                    aux_path = staging / "aux" / name
                    download_file(
                        self.http,
                        f"{base_url}/{name}",
                        aux_path,
                        timeout=self.request_timeout,
                    )
                    fetched_aux.append(aux_path)

                self._publish(staging, archive, dest_path, fetched_aux, aux_dir)

        except CacheMiss as e:
            logger.info("Cache miss for %s: %s", component, e)
            return CacheLookup(hit=False, component=component, reason=str(e), code=e.code)
        except (DownloadError, VerificationError) as e:
            logger.warning("Cache miss for %s: %s", component, e)
            return CacheLookup(hit=False, component=component, reason=str(e), code=e.code)
        except OSError as e:
            dest_path.unlink(missing_ok=True)
            logger.warning("Cache miss for %s: %s", component, e)
            return CacheLookup(hit=False, component=component, reason=str(e), code="os_error")

        logger.info("Installed cached %s to %s", component, dest_path)
        return CacheLookup(hit=True, component=component)


__all__ = [
    "CACHED_ARTIFACTS_PATH",
    "CHECKSUM_PREFIX",
    "FINGERPRINT_POINTER",
    "IMAGE_NAME_POINTER",
    "CacheClient",
    "CacheError",
    "CacheLookup",
    "CacheMiss",
    "DownloadError",
    "DownloadResult",
    "ExtractionError",
    "VerificationError",
    "cache_job_url",
    "compute_file_sha256",
    "download_file",
    "extract_archive",
    "fetch_pointer",
    "fetch_text",
    "parse_sha256sums",
]
