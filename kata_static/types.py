"""Shared type definitions for kata_static.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TextIO


class BuildTarget(str, Enum):
    """A buildable component (or group of components)."""

    ALL = "all"
    CC = "cc"
    CC_ROOTFS_IMAGE = "cc-rootfs-image"
    CC_ROOTFS_INITRD = "cc-rootfs-initrd"
    CC_SE_IMAGE = "cc-se-image"
    CC_SHIM_V2 = "cc-shim-v2"
    CC_TDX_TD_SHIM = "cc-tdx-td-shim"
    CLOUD_HYPERVISOR = "cloud-hypervisor"
    CLOUD_HYPERVISOR_GLIBC = "cloud-hypervisor-glibc"
    FIRECRACKER = "firecracker"
    KERNEL = "kernel"
    KERNEL_DRAGONBALL_EXPERIMENTAL = "kernel-dragonball-experimental"
    KERNEL_NVIDIA_GPU = "kernel-nvidia-gpu"
    KERNEL_NVIDIA_GPU_SNP = "kernel-nvidia-gpu-snp"
    KERNEL_NVIDIA_GPU_TDX_EXPERIMENTAL = "kernel-nvidia-gpu-tdx-experimental"
    KERNEL_TDX_EXPERIMENTAL = "kernel-tdx-experimental"
    KERNEL_SEV = "kernel-sev"
    NYDUS = "nydus"
    OVMF = "ovmf"
    OVMF_SEV = "ovmf-sev"
    QEMU = "qemu"
    QEMU_SNP_EXPERIMENTAL = "qemu-snp-experimental"
    QEMU_TDX_EXPERIMENTAL = "qemu-tdx-experimental"
    ROOTFS_IMAGE = "rootfs-image"
    ROOTFS_IMAGE_TDX = "rootfs-image-tdx"
    ROOTFS_INITRD = "rootfs-initrd"
    ROOTFS_INITRD_MARINER = "rootfs-initrd-mariner"
    ROOTFS_INITRD_SEV = "rootfs-initrd-sev"
    SHIM_V2 = "shim-v2"
    TDVF = "tdvf"
    VIRTIOFSD = "virtiofsd"


# Targets built when none are requested explicitly
DEFAULT_TARGETS: tuple[BuildTarget, ...] = (
    BuildTarget.CC_ROOTFS_IMAGE,
    BuildTarget.CC_SHIM_V2,
    BuildTarget.CLOUD_HYPERVISOR,
    BuildTarget.FIRECRACKER,
    BuildTarget.KERNEL,
    BuildTarget.NYDUS,
    BuildTarget.QEMU,
    BuildTarget.ROOTFS_IMAGE,
    BuildTarget.ROOTFS_INITRD,
    BuildTarget.SHIM_V2,
    BuildTarget.VIRTIOFSD,
)


class FactKind(str, Enum):
    """Where a fingerprint fact comes from."""

    MANIFEST = "manifest"
    TOOLCHAIN = "toolchain"
    SOURCE = "source"
    DIGEST = "digest"
    FILE = "file"
    IMAGE = "image"
    SETTING = "setting"
    LITERAL = "literal"


class TargetStatus(str, Enum):
    """Outcome of one target within a session."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_RUN = "not_run"


@dataclass
class BuildSession:
    """Per-target working state.

    Attributes:
        target: Target being built.
        destdir: InstallTree root (builder DESTDIR).
        builddir: Working directory for the external builder.
        final_archive: Well-known path of the target's tarball.
        log_path: Captured log file (silent mode only).
        output: Stream receiving builder output (None streams live).
    """

    target: BuildTarget
    destdir: Path
    builddir: Path
    final_archive: Path
    log_path: Path | None = None
    output: TextIO | None = None


@dataclass
class TargetResult:
    """Result of building one target."""

    target: BuildTarget
    status: TargetStatus
    archive_path: Path | None = None
    cache_hit: bool = False
    error: str | None = None
    code: str | None = None
    log_path: Path | None = None


@dataclass
class SessionResult:
    """Result of a whole build session."""

    results: list[TargetResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when every requested target succeeded."""
        return all(r.status == TargetStatus.SUCCEEDED for r in self.results)

    @property
    def failed(self) -> TargetResult | None:
        """The target that stopped the session, if any."""
        for result in self.results:
            if result.status == TargetStatus.FAILED:
                return result
        return None

    @property
    def exit_code(self) -> int:
        """Process exit status for this session."""
        return 0 if self.success else 1


__all__ = [
    "DEFAULT_TARGETS",
    "BuildSession",
    "BuildTarget",
    "FactKind",
    "SessionResult",
    "TargetResult",
    "TargetStatus",
]
