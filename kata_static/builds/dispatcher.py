"""Build dispatcher module.

This module provides the per-target build API:
- BuildDispatcher.build(): install a target from cache or by building it
- Applying per-target settings overrides
- Assembling the target's final tarball
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from kata_static.builds.assembler import assemble
from kata_static.builds.handlers import BuildContext, ComponentHandler
from kata_static.builds.registry import REGISTRY, get_handler
from kata_static.cache.client import CacheClient
from kata_static.config import Settings
from kata_static.types import BuildSession, BuildTarget, TargetResult, TargetStatus
from kata_static.versions import VersionSources

logger = logging.getLogger(__name__)


class BuildDispatcher:
    """Installs build targets into their InstallTree and packages them.

    Args:
        settings: Session settings (before per-target overrides).
        sources: Version sources of the checkout.
        cache: Remote cache client.
        registry: Handler per target.
    """

    def __init__(
        self,
        settings: Settings,
        sources: VersionSources,
        cache: CacheClient,
        registry: Mapping[BuildTarget, ComponentHandler] = REGISTRY,
    ) -> None:
        self.settings = settings
        self.sources = sources
        self.cache = cache
        self.registry = registry

    def context(self, handler: ComponentHandler, session: BuildSession) -> BuildContext:
        """Create the build context of a target."""
        return BuildContext(
            settings=handler.effective_settings(self.settings),
            sources=self.sources,
            cache=self.cache,
            session=session,
            archive_path=session.final_archive,
        )

    def build(self, session: BuildSession) -> TargetResult:
        """Install a target and assemble its final tarball.

        A cache hit places the cached tarball at the final path directly,
        so assembly leaves it untouched.

        Args:
            session: Working state of the target.

        Returns:
            TargetResult of a successful build.

        Raises:
            BuilderFailure: If the external builder fails.
            VersionLookupError: If a fingerprint fact cannot be resolved.
            ExtractionError: If a produced or cached tarball cannot be extracted.
            AssemblyError: If the final tarball cannot be written.
        """
        handler = get_handler(session.target, self.registry)
        ctx = self.context(handler, session)

        cache_hit = handler.install(ctx)
        if cache_hit:
            logger.info("%s installed from cache", session.target.value)

        result = assemble(session.destdir, session.final_archive)
        logger.info("%s contents:", result.archive_path.name)
        for member in result.members:
            logger.info("  %s", member)

        return TargetResult(
            target=session.target,
            status=TargetStatus.SUCCEEDED,
            archive_path=result.archive_path,
            cache_hit=cache_hit,
            log_path=session.log_path,
        )


__all__ = ["BuildDispatcher"]
