"""Per-target build handlers.

A handler knows, for one build target, which facts make up its
fingerprint, where its cache lives, and how to run its external builder.
``ComponentHandler.install()`` ties these together: try the cache first,
fall back to the builder on a miss.

Specialised handlers cover the targets whose behaviour goes beyond the
declarative fields: kernels (initramfs pre-build, SEV module tarball),
cloud-hypervisor (architecture-dependent features), rootfs images
(OS selection from the manifest), the shim (root-hash driven build
options and the confidential cache check) and composite targets.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from kata_static.builds.assembler import final_archive_name
from kata_static.builds.runner import (
    BuilderInvocation,
    command_for_script,
    compose_builder_env,
    install_file,
    run_builder,
)
from kata_static.cache.client import (
    CacheClient,
    CacheLookup,
    ExtractionError,
    cache_job_url,
    extract_archive,
)
from kata_static.cache.consistency import RootHashValidator, root_hash_filename
from kata_static.config import Settings
from kata_static.fingerprint import FactSource, compute_fingerprint, resolve_facts
from kata_static.types import BuildSession
from kata_static.versions import VersionSources

logger = logging.getLogger(__name__)

# Builder scripts, relative to the repository root
STATIC_BUILD_DIR = "tools/packaging/static-build"
ROOTFS_BUILDER = "tools/packaging/guest-image/build_image.sh"
SE_IMAGE_BUILDER = "tools/packaging/guest-image/build_se_image.sh"
INITRAMFS_BUILDER = f"{STATIC_BUILD_DIR}/initramfs/build.sh"

# Matches the root hash in a ``veritysetup format`` summary
ROOT_HASH_PATTERN = re.compile(r"^Root hash:\s*(\S+)", re.MULTILINE)


def yes_no(value: bool) -> str:
    """Render a toggle the way the builder scripts expect it."""
    return "yes" if value else "no"


@dataclass
class BuildContext:
    """Everything a handler needs for one run.

    Attributes:
        settings: Effective settings (target overrides applied).
        sources: Version sources of the checkout.
        cache: Remote cache client.
        session: Per-target working state.
        archive_path: Where a cache hit is placed.
        extract_hits: Extract cache hits into the InstallTree instead of
                      keeping them as the final tarball.
    """

    settings: Settings
    sources: VersionSources
    cache: CacheClient
    session: BuildSession
    archive_path: Path
    extract_hits: bool = False

    @property
    def install_root(self) -> Path:
        """InstallTree directory matching the install prefix."""
        return self.session.destdir / self.settings.prefix.lstrip("/")


@dataclass(frozen=True)
class InstallStep:
    """Copy a binary left in the builder's working directory into the tree.

    ``src`` is relative to the builder working directory and ``dest`` to
    the install prefix; both may use ``{arch}`` and ``{version}``.
    """

    src: str
    dest: str


@dataclass
class ComponentHandler:
    """Declarative handler for a single cached component.

    Attributes:
        name: Build target name.
        component: Cache component name.
        script: Builder script, relative to the repository root.
        facts: Fingerprint fact declarations, in fingerprint order.
        cache_job: CI job name template (``{arch}``), None disables caching.
        image: Static-build directory naming the builder image, if any.
        args: Builder arguments; may use ``{arch}``, ``{version}``,
              ``{prefix}``, ``{destdir}``.
        env: Extra builder environment.
        manifest_env: Builder environment read from the versions manifest.
        version_key: Manifest path of the component version.
        produced_archive: Tarball the builder leaves in its working
                          directory, extracted into the InstallTree.
        installs: Binaries to copy into the InstallTree after building.
        aux_artifacts: Auxiliary files published alongside the cache entry.
        overrides: Settings forced for this target.
        default_aa_kbc: Key broker client used when none is configured.
        arch_aliases: Architecture names the builder expects instead.
    """

    name: str
    component: str
    script: str
    facts: tuple[FactSource, ...] = ()
    cache_job: str | None = None
    image: str | None = None
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    manifest_env: Mapping[str, str] = field(default_factory=dict)
    version_key: str | None = None
    produced_archive: str | None = None
    installs: tuple[InstallStep, ...] = ()
    aux_artifacts: tuple[str, ...] = ()
    overrides: Mapping[str, Any] = field(default_factory=dict)
    default_aa_kbc: str | None = None
    arch_aliases: Mapping[str, str] = field(default_factory=dict)

    def effective_settings(self, settings: Settings) -> Settings:
        """Apply this target's forced settings to ``settings``."""
        overrides = dict(self.overrides)
        if self.default_aa_kbc and settings.aa_kbc is None and "aa_kbc" not in overrides:
            overrides["aa_kbc"] = self.default_aa_kbc
        return settings.with_overrides(**overrides)

    # Fingerprint and cache location

    def fingerprint(self, ctx: BuildContext) -> str:
        """Compute this component's current fingerprint."""
        facts = resolve_facts(self.facts, ctx.sources, ctx.settings)
        return compute_fingerprint(facts)

    def image_name(self, ctx: BuildContext) -> str | None:
        """Return the builder image name recorded with cached tarballs."""
        if self.image is None:
            return None
        return ctx.sources.builder_image_name(self.image)

    def cache_location(self, ctx: BuildContext) -> str | None:
        """Return the artifacts URL of this component's cache."""
        if self.cache_job is None:
            return None
        return cache_job_url(ctx.settings.cache_url, self.cache_job.format(arch=ctx.settings.arch))

    def try_cache(self, ctx: BuildContext) -> CacheLookup:
        """Look the component up in the remote cache."""
        base_url = self.cache_location(ctx)
        if base_url is None:
            return CacheLookup(hit=False, component=self.component, reason="not cached", code="uncached")

        if not ctx.cache.enabled:
            return CacheLookup(hit=False, component=self.component, reason="cache disabled", code="disabled")

        return ctx.cache.try_fetch(
            self.component,
            base_url,
            self.fingerprint(ctx),
            self.image_name(ctx),
            ctx.archive_path,
            aux_artifacts=self.aux_artifacts,
            aux_dir=ctx.settings.osbuilder_dir if self.aux_artifacts else None,
        )

    # Builder invocation

    def version(self, ctx: BuildContext) -> str | None:
        """Return the component version from the manifest, if declared."""
        if self.version_key is None:
            return None
        return ctx.sources.manifest_value(self.version_key)

    def builder_arch(self, ctx: BuildContext) -> str:
        """Architecture name passed to the builder."""
        return self.arch_aliases.get(ctx.settings.arch, ctx.settings.arch)

    def template_vars(self, ctx: BuildContext) -> dict[str, str]:
        """Values available to ``args`` and ``installs`` templates."""
        return {
            "arch": ctx.settings.arch,
            "version": self.version(ctx) or "",
            "prefix": ctx.settings.prefix,
            "destdir": str(ctx.session.destdir),
        }

    def builder_args(self, ctx: BuildContext) -> list[str]:
        """Arguments passed to the builder script."""
        values = self.template_vars(ctx)
        return [arg.format(**values) for arg in self.args]

    def builder_env(self, ctx: BuildContext) -> dict[str, str]:
        """Environment passed to the builder script."""
        settings = ctx.settings
        extra = {
            "ARCH": self.builder_arch(ctx),
            "MEASURED_ROOTFS": yes_no(settings.measured_rootfs),
            "DM_VERITY": yes_no(settings.dm_verity),
        }
        if settings.aa_kbc:
            extra["AA_KBC"] = settings.aa_kbc
        for key, path in self.manifest_env.items():
            extra[key] = ctx.sources.manifest_value(path)
        extra.update(self.env)
        return compose_builder_env(ctx.session.destdir, settings.prefix, extra)

    def builder_invocation(self, ctx: BuildContext) -> BuilderInvocation:
        """Describe how the builder is run."""
        script = ctx.settings.repo_root / self.script
        return BuilderInvocation(
            command=command_for_script(script, self.builder_args(ctx)),
            cwd=ctx.session.builddir,
            env=self.builder_env(ctx),
        )

    def invoke_builder(self, ctx: BuildContext) -> None:
        """Run the builder and move its outputs into the InstallTree."""
        logger.info("Build %s", self.name)
        run_builder(
            self.builder_invocation(ctx),
            output=ctx.session.output,
            timeout=ctx.settings.build_timeout,
        )

        if self.produced_archive:
            extract_archive(ctx.session.builddir / self.produced_archive, ctx.session.destdir)

        values = self.template_vars(ctx)
        for step in self.installs:
            install_file(
                ctx.session.builddir / step.src.format(**values),
                ctx.install_root / step.dest.format(**values),
            )

    def install(self, ctx: BuildContext) -> bool:
        """Install the component from cache, or build it.

        Returns:
            True on a cache hit.
        """
        lookup = self.try_cache(ctx)
        if lookup.hit:
            if ctx.extract_hits:
                extract_archive(ctx.archive_path, ctx.session.destdir)
            return True

        self.invoke_builder(ctx)
        return False


@dataclass
class ClhHandler(ComponentHandler):
    """cloud-hypervisor: features depend on the target architecture.

    Attributes:
        libc: C library to link against.
        x86_64_features: Features enabled on x86_64 (none elsewhere).
        suffix: Suffix of the component and the installed binary.
        tdx_cache_job: CI job template used when TDX support is built in.
    """

    libc: str = "musl"
    x86_64_features: str = ""
    suffix: str = ""
    tdx_cache_job: str | None = None

    def features(self, ctx: BuildContext) -> str:
        """Features enabled for the target architecture."""
        return self.x86_64_features if ctx.settings.arch == "x86_64" else ""

    def cache_location(self, ctx: BuildContext) -> str | None:
        if self.tdx_cache_job and "tdx" in self.features(ctx):
            job = self.tdx_cache_job.format(arch=ctx.settings.arch)
            return cache_job_url(ctx.settings.cache_url, job)
        return super().cache_location(ctx)

    def builder_env(self, ctx: BuildContext) -> dict[str, str]:
        env = super().builder_env(ctx)
        env["libc"] = self.libc
        env["features"] = self.features(ctx)
        return env


@dataclass
class KernelHandler(ComponentHandler):
    """Kernel flavours.

    Attributes:
        url_key: Manifest path of the kernel source URL (``{url}`` in args).
        modules_archive: Secondary cached tarball holding kernel modules,
                         extracted into the kernel build tree on a hit.
    """

    url_key: str | None = None
    modules_archive: str | None = None

    def template_vars(self, ctx: BuildContext) -> dict[str, str]:
        values = super().template_vars(ctx)
        values["url"] = ctx.sources.manifest_value(self.url_key) if self.url_key else ""
        return values

    def module_dir(self, ctx: BuildContext) -> Path:
        """Directory receiving the cached kernel modules."""
        version = self.version(ctx) or ""
        version = version.removeprefix("v")
        config_version = ctx.sources.file_contents("tools/packaging/kernel/kata_config_version")
        return (
            ctx.session.builddir
            / f"kata-linux-{version}-{config_version}"
            / "lib"
            / "modules"
            / version
        )

    def _install_cached_modules(self, ctx: BuildContext, modules_archive: str) -> bool:
        modules_path = ctx.archive_path.with_name(modules_archive)
        lookup = ctx.cache.try_fetch(
            f"{self.component}-modules",
            self.cache_location(ctx) or "",
            self.fingerprint(ctx),
            self.image_name(ctx),
            modules_path,
        )
        if not lookup.hit:
            return False
        try:
            extract_archive(modules_path, self.module_dir(ctx))
        except ExtractionError as e:
            logger.warning("Cannot use cached kernel modules: %s", e)
            return False
        return True

    def try_cache(self, ctx: BuildContext) -> CacheLookup:
        lookup = super().try_cache(ctx)
        if not lookup.hit or self.modules_archive is None:
            return lookup

        if self._install_cached_modules(ctx, self.modules_archive):
            return lookup

        # Without the modules the cached kernel tarball is unusable
        ctx.archive_path.unlink(missing_ok=True)
        return CacheLookup(
            hit=False,
            component=self.component,
            reason="kernel modules not available from cache",
            code="modules_unavailable",
        )

    def invoke_builder(self, ctx: BuildContext) -> None:
        if ctx.settings.measured_rootfs:
            logger.info("Build initramfs for measured rootfs kernel")
            run_builder(
                BuilderInvocation(
                    command=[str(ctx.settings.repo_root / INITRAMFS_BUILDER)],
                    cwd=ctx.session.builddir,
                    env=self.builder_env(ctx),
                ),
                output=ctx.session.output,
                timeout=ctx.settings.build_timeout,
            )
        logger.info("Kernel version %s", self.version(ctx))
        super().invoke_builder(ctx)


@dataclass
class RootfsHandler(ComponentHandler):
    """Guest rootfs image or initrd.

    Attributes:
        image_type: ``image`` or ``initrd``.
        variant: Rootfs variant (``tdx``, ``sev``, ``mariner``) or "".
    """

    image_type: str = "image"
    variant: str = ""

    def _os_key(self, ctx: BuildContext, field_name: str) -> str:
        parts = ["assets", self.image_type, "architecture", ctx.settings.arch]
        if self.variant:
            parts.append(self.variant)
        parts.append(field_name)
        return ".".join(parts)

    def builder_args(self, ctx: BuildContext) -> list[str]:
        sources = ctx.sources
        return [
            f"--osname={sources.manifest_value(self._os_key(ctx, 'name'))}",
            f"--osversion={sources.manifest_value(self._os_key(ctx, 'version'))}",
            f"--imagetype={self.image_type}",
            f"--prefix={ctx.settings.prefix}",
            f"--destdir={ctx.session.destdir}",
            f"--image_initrd_suffix={self.variant}",
        ]

    def invoke_builder(self, ctx: BuildContext) -> None:
        logger.info("Create %s", self.image_type)
        super().invoke_builder(ctx)


def read_root_hash(path: Path) -> str | None:
    """Return the root hash recorded in a root-hash file, if any."""
    if not path.is_file():
        return None
    match = ROOT_HASH_PATTERN.search(path.read_text(encoding="utf-8"))
    return match.group(1) if match else None


@dataclass
class ShimV2Handler(ComponentHandler):
    """Container runtime shim.

    The confidential flavour embeds the root hashes of the measured rootfs
    variants, so its cache is only trusted after the root-hash check.

    Attributes:
        confidential: Build the confidential flavour.
        root_hash_variants: Variants whose root hashes are embedded.
    """

    confidential: bool = False
    root_hash_variants: tuple[str, ...] = ("vanilla", "tdx")

    def _validator(self, ctx: BuildContext) -> RootHashValidator:
        return RootHashValidator(
            ctx.cache,
            ctx.settings.cache_url,
            ctx.settings.arch,
            ctx.settings.osbuilder_dir,
        )

    def try_cache(self, ctx: BuildContext) -> CacheLookup:
        if not self.confidential:
            return super().try_cache(ctx)

        base_url = self.cache_location(ctx)
        if base_url is None:
            return CacheLookup(hit=False, component=self.component, reason="not cached", code="uncached")

        if not ctx.cache.enabled:
            return CacheLookup(hit=False, component=self.component, reason="cache disabled", code="disabled")

        validator = self._validator(ctx)
        check = validator.validate(base_url)
        if not check.accepted:
            return CacheLookup(
                hit=False,
                component=self.component,
                reason=check.reason,
                code="root_hash_mismatch",
            )

        return ctx.cache.try_fetch(
            self.component,
            base_url,
            self.fingerprint(ctx),
            self.image_name(ctx),
            ctx.archive_path,
            aux_artifacts=tuple(validator.filenames),
            aux_dir=ctx.settings.osbuilder_dir,
        )

    def extra_opts(self, ctx: BuildContext) -> str:
        """Build options passed to the shim's Makefile through EXTRA_OPTS."""
        if not self.confidential and not ctx.settings.measured_rootfs:
            return ""

        opts = ["DEFSERVICEOFFLOAD=true"]
        if not ctx.settings.measured_rootfs:
            return " ".join(opts)

        osbuilder = ctx.settings.osbuilder_dir
        if self.confidential:
            scheme = "cc_rootfs_verity"
            files = {
                "ROOTMEASURECONFIG": osbuilder / root_hash_filename("vanilla"),
                "ROOTMEASURECONFIGTDX": osbuilder / root_hash_filename("tdx"),
            }
        else:
            scheme = "rootfs_verity"
            files = {"ROOTMEASURECONFIG": osbuilder / "root_hash.txt"}

        for option, path in files.items():
            root_hash = read_root_hash(path)
            if root_hash:
                opts.append(f'{option}="{scheme}.scheme=dm-verity {scheme}.hash={root_hash}"')
        return " ".join(opts)

    def builder_env(self, ctx: BuildContext) -> dict[str, str]:
        env = super().builder_env(ctx)
        extra_opts = self.extra_opts(ctx)
        if extra_opts:
            logger.info("extra_opts: %s", extra_opts)
            env["EXTRA_OPTS"] = extra_opts
        return env


@dataclass
class CompositeHandler(ComponentHandler):
    """Several components installed into one InstallTree.

    Each member is cached and built on its own; cache hits are extracted
    into the shared tree and the composite is packaged once.
    """

    members: tuple[ComponentHandler, ...] = ()

    def member_context(self, ctx: BuildContext, member: ComponentHandler) -> BuildContext:
        """Context for building ``member`` inside this composite."""
        return replace(
            ctx,
            settings=member.effective_settings(ctx.settings),
            archive_path=ctx.session.builddir / final_archive_name(member.name),
            extract_hits=True,
        )

    def try_cache(self, ctx: BuildContext) -> CacheLookup:
        return CacheLookup(hit=False, component=self.component, reason="composite target", code="composite")

    def install(self, ctx: BuildContext) -> bool:
        hits = [member.install(self.member_context(ctx, member)) for member in self.members]
        logger.info(
            "%s: %d of %d components from cache", self.name, sum(hits), len(hits)
        )
        return False


def member_names(handler: ComponentHandler) -> Sequence[str]:
    """Names of the components a handler installs."""
    if isinstance(handler, CompositeHandler):
        return [member.name for member in handler.members]
    return [handler.name]


__all__ = [
    "BuildContext",
    "ClhHandler",
    "ComponentHandler",
    "CompositeHandler",
    "InstallStep",
    "KernelHandler",
    "RootfsHandler",
    "ShimV2Handler",
    "member_names",
    "read_root_hash",
    "yes_no",
]
