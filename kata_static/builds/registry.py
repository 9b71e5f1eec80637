"""Registry of build targets.

Maps every ``BuildTarget`` to the handler describing its fingerprint
facts, cache job and builder. Targets are looked up by name with
``parse_target()``; unknown names are a configuration error.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from kata_static.builds.handlers import (
    ROOTFS_BUILDER,
    SE_IMAGE_BUILDER,
    STATIC_BUILD_DIR,
    ClhHandler,
    ComponentHandler,
    CompositeHandler,
    InstallStep,
    KernelHandler,
    RootfsHandler,
    ShimV2Handler,
)
from kata_static.cache.consistency import root_hash_filename
from kata_static.fingerprint import (
    FactSource,
    builder_image,
    digest,
    file_contents,
    literal,
    manifest,
    setting,
    source,
    toolchain,
)
from kata_static.types import BuildTarget


class InvalidTargetError(Exception):
    """Raised when a build target name is not known."""

    def __init__(self, name: str, code: str = "invalid_target") -> None:
        super().__init__(f"Invalid build target {name}")
        self.name = name
        self.code = code


def _main_job(name: str) -> str:
    return f"kata-containers-main-{name}-{{arch}}"


def _cc_job(name: str) -> str:
    return f"kata-containers-2.0-{name}-cc-{{arch}}"


# Kernels

KERNEL_DIR = f"{STATIC_BUILD_DIR}/kernel"
KERNEL_CONFIG_VERSION = "tools/packaging/kernel/kata_config_version"


def _kernel(
    target: BuildTarget,
    version_key: str,
    args: tuple[str, ...],
    url_key: str | None = None,
    cache_job: str | None = None,
    **kwargs,
) -> KernelHandler:
    return KernelHandler(
        name=target.value,
        component=target.value,
        script=f"{KERNEL_DIR}/build.sh",
        facts=(
            manifest(version_key),
            file_contents(KERNEL_CONFIG_VERSION),
            source(KERNEL_DIR),
        ),
        cache_job=cache_job or _main_job(target.value),
        image=KERNEL_DIR,
        args=("-v", "{version}", *args),
        version_key=version_key,
        url_key=url_key,
        **kwargs,
    )


# Hypervisors

QEMU_DIR = f"{STATIC_BUILD_DIR}/qemu"
QEMU_FACT_PATHS = ("tools/packaging/qemu", QEMU_DIR)


def _qemu(
    target: BuildTarget,
    manifest_name: str,
    version_field: str,
    script: str,
    cache_job: str,
    suffix: str = "",
) -> ComponentHandler:
    tarball = f"kata-static-qemu-{suffix}.tar.gz" if suffix else "kata-static-qemu.tar.gz"
    version_key = f"assets.hypervisor.{manifest_name}.{version_field}"
    env = {"qemu_tarball_name": tarball}
    if suffix:
        env["qemu_suffix"] = suffix
    return ComponentHandler(
        name=target.value,
        component=target.value,
        script=f"{QEMU_DIR}/{script}",
        facts=(manifest(version_key), digest(*QEMU_FACT_PATHS)),
        cache_job=cache_job,
        image=QEMU_DIR,
        env=env,
        manifest_env={
            "qemu_repo": f"assets.hypervisor.{manifest_name}.url",
            "qemu_version": version_key,
        },
        version_key=version_key,
        produced_archive=tarball,
    )


def _clh(target: BuildTarget, libc: str, x86_64_features: str, suffix: str = "") -> ClhHandler:
    return ClhHandler(
        name=target.value,
        component=f"cloud-hypervisor{suffix}",
        script=f"{STATIC_BUILD_DIR}/cloud-hypervisor/build-static-clh.sh",
        facts=(manifest("assets.hypervisor.cloud_hypervisor.version"),),
        cache_job=f"kata-containers-main-clh-{{arch}}{suffix}",
        tdx_cache_job=f"kata-containers-2.0-clh-cc-{{arch}}{suffix}",
        installs=(InstallStep("cloud-hypervisor/cloud-hypervisor", f"bin/cloud-hypervisor{suffix}"),),
        libc=libc,
        x86_64_features=x86_64_features,
        suffix=suffix,
    )


# Firmware

OVMF_DIR = f"{STATIC_BUILD_DIR}/ovmf"


def _ovmf(target: BuildTarget, component: str, ovmf_type: str, tarball: str, cache_job: str) -> ComponentHandler:
    return ComponentHandler(
        name=target.value,
        component=component,
        script=f"{OVMF_DIR}/build.sh",
        facts=(manifest(f"externals.ovmf.{ovmf_type}.version"),),
        cache_job=cache_job,
        image=OVMF_DIR,
        env={"ovmf_build": ovmf_type},
        produced_archive=tarball,
    )


# Shim

SHIM_V2_DIR = f"{STATIC_BUILD_DIR}/shim-v2"
SHIM_V2_FACTS: tuple[FactSource, ...] = (
    source("src/runtime"),
    source("src/libs/protocols"),
    source("src/runtime-rs"),
    toolchain("languages.golang.meta.newest-version"),
    toolchain("languages.rust.meta.newest-version"),
)
SHIM_V2_TOOLCHAIN_ENV = {
    "GO_VERSION": "languages.golang.meta.newest-version",
    "RUST_VERSION": "languages.rust.meta.newest-version",
}


# Guest rootfs

ROOTFS_FACTS: tuple[FactSource, ...] = (
    source("tools/osbuilder"),
    source("tools/packaging/guest-image"),
    source("src/agent"),
    source("src/libs"),
    manifest("externals.gperf.version"),
    manifest("externals.libseccomp.version"),
    toolchain("languages.rust.meta.newest-version"),
)


def _cc_rootfs_facts(image_type: str, with_initramfs: bool) -> tuple[FactSource, ...]:
    initramfs = (builder_image(f"{STATIC_BUILD_DIR}/initramfs"),) if with_initramfs else ()
    return (
        source("tools/osbuilder"),
        source("tools/packaging/guest-image"),
        *initramfs,
        source("src/agent"),
        source("src/libs"),
        manifest("externals.attestation-agent.version"),
        manifest("externals.gperf.version"),
        manifest("externals.libseccomp.version"),
        manifest("externals.pause.version"),
        toolchain("languages.rust.meta.newest-version"),
        literal(image_type),
        setting("aa_kbc"),
    )


def _rootfs(
    target: BuildTarget,
    image_type: str,
    variant: str = "",
    confidential: bool = False,
    cache_job: str | None = None,
    component: str | None = None,
    **kwargs,
) -> RootfsHandler:
    full_type = f"{image_type}-{variant}" if variant else image_type
    if confidential:
        facts = _cc_rootfs_facts(full_type, with_initramfs=image_type == "initrd")
        kwargs.setdefault("env", {"KATA_BUILD_CC": "yes"})
    else:
        facts = (*ROOTFS_FACTS, literal(full_type))
    return RootfsHandler(
        name=target.value,
        component=component or f"rootfs-{full_type}",
        script=ROOTFS_BUILDER,
        facts=facts,
        cache_job=cache_job or _main_job(f"rootfs-{full_type}"),
        image_type=image_type,
        variant=variant,
        **kwargs,
    )


# Measured rootfs targets force dm-verity protection on
MEASURED = {"measured_rootfs": True, "dm_verity": True}


def build_registry() -> dict[BuildTarget, ComponentHandler]:
    """Create the handler for every build target."""
    T = BuildTarget
    handlers: dict[BuildTarget, ComponentHandler] = {}

    def add(target: BuildTarget, handler: ComponentHandler) -> None:
        handlers[target] = handler

    # Kernels
    add(T.KERNEL, _kernel(T.KERNEL, "assets.kernel.version", ("-f",)))
    add(
        T.KERNEL_DRAGONBALL_EXPERIMENTAL,
        _kernel(
            T.KERNEL_DRAGONBALL_EXPERIMENTAL,
            "assets.kernel-dragonball-experimental.version",
            ("-e", "-t", "dragonball"),
        ),
    )
    add(
        T.KERNEL_NVIDIA_GPU,
        _kernel(
            T.KERNEL_NVIDIA_GPU,
            "assets.kernel.version",
            ("-g", "nvidia", "-u", "{url}", "-H", "deb"),
            url_key="assets.kernel.url",
        ),
    )
    add(
        T.KERNEL_NVIDIA_GPU_SNP,
        _kernel(
            T.KERNEL_NVIDIA_GPU_SNP,
            "assets.kernel.sev.version",
            ("-x", "sev", "-g", "nvidia", "-u", "{url}", "-H", "deb"),
            url_key="assets.kernel.sev.url",
        ),
    )
    add(
        T.KERNEL_NVIDIA_GPU_TDX_EXPERIMENTAL,
        _kernel(
            T.KERNEL_NVIDIA_GPU_TDX_EXPERIMENTAL,
            "assets.kernel-tdx-experimental.version",
            ("-x", "tdx", "-g", "nvidia", "-u", "{url}", "-H", "deb"),
            url_key="assets.kernel-tdx-experimental.url",
        ),
    )
    add(
        T.KERNEL_TDX_EXPERIMENTAL,
        _kernel(
            T.KERNEL_TDX_EXPERIMENTAL,
            "assets.kernel-tdx-experimental.version",
            ("-x", "tdx", "-u", "{url}"),
            url_key="assets.kernel-tdx-experimental.url",
            cache_job=_cc_job("kernel-tdx"),
            overrides={"measured_rootfs": True},
        ),
    )
    add(
        T.KERNEL_SEV,
        _kernel(
            T.KERNEL_SEV,
            "assets.kernel.sev.version",
            ("-x", "sev", "-u", "{url}"),
            url_key="assets.kernel.sev.url",
            modules_archive="kata-static-kernel-sev-modules.tar.xz",
        ),
    )

    # Hypervisors
    add(
        T.QEMU,
        _qemu(T.QEMU, "qemu", "version", "build-static-qemu.sh", _main_job("qemu")),
    )
    add(
        T.QEMU_TDX_EXPERIMENTAL,
        _qemu(
            T.QEMU_TDX_EXPERIMENTAL,
            "qemu-tdx-experimental",
            "tag",
            "build-static-qemu-experimental.sh",
            _cc_job("qemu-tdx"),
            suffix="tdx-experimental",
        ),
    )
    add(
        T.QEMU_SNP_EXPERIMENTAL,
        _qemu(
            T.QEMU_SNP_EXPERIMENTAL,
            "qemu-snp-experimental",
            "tag",
            "build-static-qemu-experimental.sh",
            _main_job("qemu-snp-experimental"),
            suffix="snp-experimental",
        ),
    )
    add(T.CLOUD_HYPERVISOR, _clh(T.CLOUD_HYPERVISOR, "musl", "mshv,tdx"))
    add(
        T.CLOUD_HYPERVISOR_GLIBC,
        _clh(T.CLOUD_HYPERVISOR_GLIBC, "gnu", "mshv", suffix="-glibc"),
    )
    add(
        T.FIRECRACKER,
        ComponentHandler(
            name=T.FIRECRACKER.value,
            component="firecracker",
            script=f"{STATIC_BUILD_DIR}/firecracker/build-static-firecracker.sh",
            facts=(manifest("assets.hypervisor.firecracker.version"),),
            cache_job=_main_job("firecracker"),
            version_key="assets.hypervisor.firecracker.version",
            installs=(
                InstallStep("release-{version}-{arch}/firecracker-{version}-{arch}", "bin/firecracker"),
                InstallStep("release-{version}-{arch}/jailer-{version}-{arch}", "bin/jailer"),
            ),
        ),
    )

    # Helpers
    add(
        T.VIRTIOFSD,
        ComponentHandler(
            name=T.VIRTIOFSD.value,
            component="virtiofsd",
            script=f"{STATIC_BUILD_DIR}/virtiofsd/build.sh",
            facts=(
                manifest("externals.virtiofsd.version"),
                toolchain("externals.virtiofsd.toolchain"),
            ),
            cache_job=_main_job("virtiofsd"),
            image=f"{STATIC_BUILD_DIR}/virtiofsd",
            installs=(InstallStep("virtiofsd/virtiofsd", "libexec/virtiofsd"),),
        ),
    )
    add(
        T.NYDUS,
        ComponentHandler(
            name=T.NYDUS.value,
            component="nydus",
            script=f"{STATIC_BUILD_DIR}/nydus/build.sh",
            facts=(manifest("externals.nydus.version"),),
            cache_job=_main_job("nydus"),
            installs=(InstallStep("nydus-static/nydusd", "libexec/nydusd"),),
            arch_aliases={"aarch64": "arm64"},
        ),
    )

    # Firmware
    add(T.OVMF, _ovmf(T.OVMF, "ovmf", "x86_64", "edk2-x86_64.tar.gz", _main_job("ovmf-x86_64")))
    add(T.OVMF_SEV, _ovmf(T.OVMF_SEV, "ovmf", "sev", "edk2-sev.tar.gz", _main_job("ovmf-sev")))
    add(T.TDVF, _ovmf(T.TDVF, "tdvf", "tdx", "edk2-staging-tdx.tar.gz", _cc_job("tdvf")))
    add(
        T.CC_TDX_TD_SHIM,
        ComponentHandler(
            name=T.CC_TDX_TD_SHIM.value,
            component="td-shim",
            script=f"{STATIC_BUILD_DIR}/td-shim/build.sh",
            facts=(
                manifest("externals.td-shim.version"),
                toolchain("externals.td-shim.toolchain"),
            ),
            cache_job=_cc_job("td-shim"),
            image=f"{STATIC_BUILD_DIR}/td-shim",
            produced_archive="td-shim.tar.gz",
        ),
    )

    # Shim
    add(
        T.SHIM_V2,
        ShimV2Handler(
            name=T.SHIM_V2.value,
            component="shim-v2",
            script=f"{SHIM_V2_DIR}/build.sh",
            facts=SHIM_V2_FACTS,
            cache_job=_main_job("shim-v2"),
            image=SHIM_V2_DIR,
            manifest_env=SHIM_V2_TOOLCHAIN_ENV,
        ),
    )
    add(
        T.CC_SHIM_V2,
        ShimV2Handler(
            name=T.CC_SHIM_V2.value,
            component="shim-v2",
            script=f"{SHIM_V2_DIR}/build.sh",
            facts=SHIM_V2_FACTS,
            cache_job=_cc_job("shim-v2"),
            image=SHIM_V2_DIR,
            manifest_env=SHIM_V2_TOOLCHAIN_ENV,
            env={"REMOVE_VMM_CONFIGS": "acrn fc"},
            confidential=True,
        ),
    )

    # Guest rootfs
    add(T.ROOTFS_IMAGE, _rootfs(T.ROOTFS_IMAGE, "image"))
    add(T.ROOTFS_INITRD, _rootfs(T.ROOTFS_INITRD, "initrd"))
    add(T.ROOTFS_INITRD_MARINER, _rootfs(T.ROOTFS_INITRD_MARINER, "initrd", variant="mariner"))
    add(
        T.CC_ROOTFS_IMAGE,
        _rootfs(
            T.CC_ROOTFS_IMAGE,
            "image",
            confidential=True,
            cache_job=_cc_job("rootfs-image"),
            component="cc-rootfs-image",
            aux_artifacts=(root_hash_filename("vanilla"),),
            overrides=MEASURED,
            default_aa_kbc="offline_fs_kbc",
        ),
    )
    add(
        T.ROOTFS_IMAGE_TDX,
        _rootfs(
            T.ROOTFS_IMAGE_TDX,
            "image",
            variant="tdx",
            confidential=True,
            cache_job=_cc_job("rootfs-image-tdx"),
            component="tdx-rootfs-image",
            aux_artifacts=(root_hash_filename("tdx"),),
            overrides={**MEASURED, "aa_kbc": "cc_kbc_tdx"},
        ),
    )
    add(
        T.CC_ROOTFS_INITRD,
        _rootfs(
            T.CC_ROOTFS_INITRD,
            "initrd",
            confidential=True,
            cache_job=_cc_job("rootfs-initrd"),
            component="cc-rootfs-initrd",
            default_aa_kbc="offline_fs_kbc",
        ),
    )
    add(
        T.ROOTFS_INITRD_SEV,
        _rootfs(
            T.ROOTFS_INITRD_SEV,
            "initrd",
            variant="sev",
            confidential=True,
            cache_job=_cc_job("rootfs-initrd-sev"),
            component="sev-rootfs-initrd",
            overrides={"measured_rootfs": False, "aa_kbc": "online_sev_kbc"},
        ),
    )
    add(
        T.CC_SE_IMAGE,
        ComponentHandler(
            name=T.CC_SE_IMAGE.value,
            component="se-image",
            script=SE_IMAGE_BUILDER,
            args=("--destdir={destdir}",),
        ),
    )

    # Composite targets
    add(
        T.ALL,
        CompositeHandler(
            name=T.ALL.value,
            component="all",
            script="",
            members=tuple(
                handlers[t]
                for t in (
                    T.CLOUD_HYPERVISOR,
                    T.FIRECRACKER,
                    T.ROOTFS_IMAGE,
                    T.ROOTFS_INITRD,
                    T.ROOTFS_INITRD_SEV,
                    T.KERNEL,
                    T.KERNEL_DRAGONBALL_EXPERIMENTAL,
                    T.KERNEL_TDX_EXPERIMENTAL,
                    T.NYDUS,
                    T.OVMF,
                    T.OVMF_SEV,
                    T.QEMU,
                    T.QEMU_TDX_EXPERIMENTAL,
                    T.SHIM_V2,
                    T.TDVF,
                    T.VIRTIOFSD,
                )
            ),
        ),
    )
    add(
        T.CC,
        CompositeHandler(
            name=T.CC.value,
            component="cc",
            script="",
            members=(handlers[T.CC_ROOTFS_IMAGE], handlers[T.CC_SHIM_V2]),
        ),
    )

    return handlers


REGISTRY: Mapping[BuildTarget, ComponentHandler] = build_registry()


def parse_target(name: str) -> BuildTarget:
    """Return the BuildTarget called ``name``.

    Raises:
        InvalidTargetError: If ``name`` is not a known target.
    """
    try:
        return BuildTarget(name)
    except ValueError:
        raise InvalidTargetError(name) from None


def parse_targets(names: Iterable[str]) -> list[BuildTarget]:
    """Parse target names, accepting space-separated lists.

    Raises:
        InvalidTargetError: On the first unknown name.
    """
    return [parse_target(part) for name in names for part in name.split()]


def get_handler(
    target: BuildTarget,
    registry: Mapping[BuildTarget, ComponentHandler] = REGISTRY,
) -> ComponentHandler:
    """Return the handler of a target.

    Raises:
        InvalidTargetError: If the registry has no handler for ``target``.
    """
    try:
        return registry[target]
    except KeyError:
        raise InvalidTargetError(target.value) from None


__all__ = [
    "REGISTRY",
    "InvalidTargetError",
    "build_registry",
    "get_handler",
    "parse_target",
    "parse_targets",
]
