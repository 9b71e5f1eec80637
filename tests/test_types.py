"""Tests for shared types module."""

from pathlib import Path

from kata_static.types import (
    DEFAULT_TARGETS,
    BuildTarget,
    FactKind,
    SessionResult,
    TargetResult,
    TargetStatus,
)


class TestEnums:
    """Test enum definitions."""

    def test_target_values(self) -> None:
        """BuildTarget values are the CLI names."""
        assert BuildTarget("cc-shim-v2") is BuildTarget.CC_SHIM_V2
        assert BuildTarget.ROOTFS_INITRD_MARINER.value == "rootfs-initrd-mariner"
        assert len(BuildTarget) == 31

    def test_default_targets(self) -> None:
        """The default list is a subset of the vocabulary."""
        assert BuildTarget.SHIM_V2 in DEFAULT_TARGETS
        assert BuildTarget.ALL not in DEFAULT_TARGETS

    def test_fact_kind_values(self) -> None:
        """FactKind should have expected values."""
        assert FactKind.MANIFEST.value == "manifest"
        assert FactKind.DIGEST.value == "digest"

    def test_target_status_values(self) -> None:
        """TargetStatus should have expected values."""
        assert TargetStatus.SUCCEEDED.value == "succeeded"
        assert TargetStatus.FAILED.value == "failed"
        assert TargetStatus.NOT_RUN.value == "not_run"


class TestSessionResult:
    """Test SessionResult."""

    def test_success(self) -> None:
        """All succeeded targets make a successful session."""
        result = SessionResult(
            results=[
                TargetResult(
                    target=BuildTarget.KERNEL,
                    status=TargetStatus.SUCCEEDED,
                    archive_path=Path("kata-static-kernel.tar.xz"),
                )
            ]
        )
        assert result.success
        assert result.failed is None
        assert result.exit_code == 0

    def test_failure(self) -> None:
        """A failed target is reported with exit status 1."""
        failed = TargetResult(target=BuildTarget.QEMU, status=TargetStatus.FAILED, error="boom")
        result = SessionResult(
            results=[failed, TargetResult(target=BuildTarget.NYDUS, status=TargetStatus.NOT_RUN)]
        )
        assert not result.success
        assert result.failed is failed
        assert result.exit_code == 1
