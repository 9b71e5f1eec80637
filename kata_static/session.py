"""Build session runner.

This module handles:
- Validating the requested targets before any state is created
- Per-target working directories and stale tarball cleanup
- Silent mode: capturing logs and builder output in ``<builddir>/log``
- Running targets strictly in order, stopping at the first failure

Only one capture is active at a time and it is torn down exactly once,
whatever way the target finishes; the captured log is printed after the
capture has been restored.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from pathlib import Path

import httpx
from rich.console import Console

from kata_static.builds.assembler import AssemblyError, checksum_path, final_archive_name
from kata_static.builds.dispatcher import BuildDispatcher
from kata_static.builds.registry import InvalidTargetError, parse_targets
from kata_static.builds.runner import BuilderFailure
from kata_static.cache.client import CacheClient, ExtractionError
from kata_static.config import Settings
from kata_static.types import (
    BuildSession,
    BuildTarget,
    SessionResult,
    TargetResult,
    TargetStatus,
)
from kata_static.versions import VersionLookupError, VersionSources

logger = logging.getLogger(__name__)

# Errors that fail a target and stop the session
TARGET_ERRORS = (
    AssemblyError,
    BuilderFailure,
    ExtractionError,
    InvalidTargetError,
    VersionLookupError,
)

LOG_FILE_NAME = "log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def target_session(settings: Settings, target: BuildTarget) -> BuildSession:
    """Return the working state of a target (nothing is created)."""
    target_dir = settings.build_root / target.value
    return BuildSession(
        target=target,
        destdir=target_dir / "destdir",
        builddir=target_dir / "builddir",
        final_archive=settings.workdir / final_archive_name(target.value),
    )


def prepare_session(session: BuildSession) -> None:
    """Reset the InstallTree, create builddir and drop a stale tarball."""
    if session.destdir.exists():
        shutil.rmtree(session.destdir)
    session.destdir.mkdir(parents=True)
    session.builddir.mkdir(parents=True, exist_ok=True)
    if session.final_archive.exists():
        logger.info("Removing stale %s", session.final_archive)
        session.final_archive.unlink()
    checksum_path(session.final_archive).unlink(missing_ok=True)


@contextmanager
def capture_log(session: BuildSession) -> Iterator[Path]:
    """Send log records and builder output to ``<builddir>/log``.

    Yields:
        Path of the log file.
    """
    log_path = session.builddir / LOG_FILE_NAME
    package_logger = logging.getLogger("kata_static")

    with log_path.open("w", encoding="utf-8", buffering=1) as stream:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
        session.log_path = log_path
        session.output = stream
        try:
            yield log_path
        finally:
            session.output = None
            package_logger.removeHandler(handler)
            handler.close()


def dump_log(log_path: Path, console: Console) -> None:
    """Print a captured log in full."""
    try:
        text = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.error("Cannot read build log %s: %s", log_path, e)
        return
    console.out(text, highlight=False, end="")


def _build_target(
    dispatcher: BuildDispatcher,
    session: BuildSession,
    silent: bool,
    console: Console,
) -> TargetResult:
    failure: TargetResult
    with ExitStack() as stack:
        if silent:
            log_path = stack.enter_context(capture_log(session))
            console.print(f"build log: {log_path}", markup=False, highlight=False)
        try:
            return dispatcher.build(session)
        except TARGET_ERRORS as e:
            logger.error("Failed to build %s: %s", session.target.value, e)
            failure = TargetResult(
                target=session.target,
                status=TargetStatus.FAILED,
                error=str(e),
                code=getattr(e, "code", None),
                log_path=session.log_path,
            )
        except Exception as e:
            # Anything else still fails the target and gets its log printed
            logger.exception("Unexpected error building %s", session.target.value)
            failure = TargetResult(
                target=session.target,
                status=TargetStatus.FAILED,
                error=f"Unexpected error: {e}",
                code="unexpected_error",
                log_path=session.log_path,
            )

    if silent and session.log_path is not None:
        console.print(f"Failed to build: {session.target.value}, logs:", markup=False)
        dump_log(session.log_path, console)
    return failure


def run_session(
    targets: Sequence[str],
    settings: Settings,
    silent: bool = False,
    *,
    dispatcher: BuildDispatcher | None = None,
    console: Console | None = None,
) -> SessionResult:
    """Build targets in order, stopping at the first failure.

    Args:
        targets: Target names, in build order.
        settings: Session settings.
        silent: Capture each target's output in its log file.
        dispatcher: Dispatcher to use (created from settings if None).
        console: Console for progress output.

    Returns:
        SessionResult with one entry per requested target.

    Raises:
        InvalidTargetError: If a target name is unknown. Raised before any
                            directory is created.
    """
    build_targets = parse_targets(targets)
    console = console or Console()
    result = SessionResult()

    with ExitStack() as stack:
        if dispatcher is None:
            http = stack.enter_context(
                httpx.Client(timeout=settings.request_timeout, follow_redirects=True)
            )
            cache = CacheClient(
                http,
                enabled=settings.use_cache,
                request_timeout=settings.request_timeout,
                download_timeout=settings.download_timeout,
            )
            sources = VersionSources(settings.repo_root, settings.arch, settings.builder_registry)
            dispatcher = BuildDispatcher(settings, sources, cache)

        try:
            kata_version = dispatcher.sources.release_version()
        except VersionLookupError as e:
            logger.warning("Cannot determine kata version: %s", e)
            kata_version = "unknown"

        for index, target in enumerate(build_targets):
            console.print(f"Build kata version {kata_version}: {target.value}", markup=False)
            session = target_session(settings, target)
            prepare_session(session)

            target_result = _build_target(dispatcher, session, silent, console)
            result.results.append(target_result)
            if target_result.status == TargetStatus.FAILED:
                result.results.extend(
                    TargetResult(target=remaining, status=TargetStatus.NOT_RUN)
                    for remaining in build_targets[index + 1 :]
                )
                break

    return result


__all__ = [
    "capture_log",
    "dump_log",
    "prepare_session",
    "run_session",
    "target_session",
]
