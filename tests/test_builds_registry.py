"""Tests for the build target registry."""

import pytest

from kata_static.builds.handlers import (
    ClhHandler,
    CompositeHandler,
    KernelHandler,
    RootfsHandler,
    ShimV2Handler,
)
from kata_static.builds.registry import (
    REGISTRY,
    InvalidTargetError,
    build_registry,
    get_handler,
    parse_target,
    parse_targets,
)
from kata_static.types import DEFAULT_TARGETS, BuildTarget


class TestRegistry:
    """Tests for the target catalogue."""

    def test_every_target_has_a_handler(self) -> None:
        """Each build target is registered."""
        assert set(REGISTRY) == set(BuildTarget)

    def test_handler_names_match_targets(self) -> None:
        """Handlers are named after their target."""
        for target, handler in REGISTRY.items():
            assert handler.name == target.value

    def test_default_targets_registered(self) -> None:
        """The default target list only names known targets."""
        assert all(target in REGISTRY for target in DEFAULT_TARGETS)
        assert "kernel-experimental" not in {t.value for t in DEFAULT_TARGETS}

    def test_specialised_handlers(self) -> None:
        """Targets with special behaviour use the matching handler."""
        assert isinstance(REGISTRY[BuildTarget.KERNEL_SEV], KernelHandler)
        assert isinstance(REGISTRY[BuildTarget.CLOUD_HYPERVISOR], ClhHandler)
        assert isinstance(REGISTRY[BuildTarget.ROOTFS_INITRD_MARINER], RootfsHandler)
        assert isinstance(REGISTRY[BuildTarget.CC_SHIM_V2], ShimV2Handler)
        assert isinstance(REGISTRY[BuildTarget.ALL], CompositeHandler)

    def test_composites(self) -> None:
        """Composite targets group their members."""
        cc = REGISTRY[BuildTarget.CC]
        assert [m.name for m in cc.members] == ["cc-rootfs-image", "cc-shim-v2"]
        all_members = [m.name for m in REGISTRY[BuildTarget.ALL].members]
        assert "shim-v2" in all_members
        assert "kernel" in all_members
        assert len(all_members) == len(set(all_members))

    def test_mariner_initrd_is_a_variant(self) -> None:
        """The mariner initrd builds the mariner variant."""
        handler = REGISTRY[BuildTarget.ROOTFS_INITRD_MARINER]
        assert handler.image_type == "initrd"
        assert handler.variant == "mariner"

    def test_measured_rootfs_overrides(self) -> None:
        """Measured rootfs targets force measurement on."""
        assert REGISTRY[BuildTarget.CC_ROOTFS_IMAGE].overrides == {
            "measured_rootfs": True,
            "dm_verity": True,
        }
        assert REGISTRY[BuildTarget.KERNEL_TDX_EXPERIMENTAL].overrides == {
            "measured_rootfs": True
        }

    def test_rootfs_aux_root_hashes(self) -> None:
        """Measured rootfs images publish their root hash files."""
        assert REGISTRY[BuildTarget.CC_ROOTFS_IMAGE].aux_artifacts == ("root_hash_vanilla.txt",)
        assert REGISTRY[BuildTarget.ROOTFS_IMAGE_TDX].aux_artifacts == ("root_hash_tdx.txt",)

    def test_se_image_is_not_cached(self) -> None:
        """The IBM SE image has no cache job."""
        assert REGISTRY[BuildTarget.CC_SE_IMAGE].cache_job is None

    def test_build_registry_is_fresh(self) -> None:
        """build_registry returns a new mapping each time."""
        assert build_registry() is not build_registry()


class TestParseTarget:
    """Tests for target parsing."""

    def test_known_target(self) -> None:
        """Known names parse to BuildTarget."""
        assert parse_target("shim-v2") is BuildTarget.SHIM_V2

    def test_unknown_target(self) -> None:
        """Unknown names raise InvalidTargetError."""
        with pytest.raises(InvalidTargetError) as exc_info:
            parse_target("kernel-experimental")
        assert exc_info.value.code == "invalid_target"
        assert exc_info.value.name == "kernel-experimental"

    def test_space_separated_list(self) -> None:
        """Space-separated target lists are split."""
        assert parse_targets(["kernel qemu", "nydus"]) == [
            BuildTarget.KERNEL,
            BuildTarget.QEMU,
            BuildTarget.NYDUS,
        ]

    def test_any_unknown_fails_all(self) -> None:
        """One unknown name rejects the whole list."""
        with pytest.raises(InvalidTargetError):
            parse_targets(["kernel", "bogus"])

    def test_get_handler_missing(self) -> None:
        """Looking up a target absent from a registry fails."""
        with pytest.raises(InvalidTargetError):
            get_handler(BuildTarget.KERNEL, registry={})
