"""Shared fixtures: a minimal source checkout and settings pointing at it."""

from pathlib import Path

import pytest

from kata_static.config import Settings
from kata_static.versions import VersionSources

CACHE_URL = "http://ci.example.com"

VERSIONS_YAML = """\
assets:
  kernel:
    version: v6.1.38
    url: https://cdn.kernel.org/pub/linux/kernel/v6.x/
    sev:
      version: v5.19.2
      url: https://github.com/AMDESE/linux/archive/
  kernel-tdx-experimental:
    version: v6.2-tdx
    url: https://github.com/intel/linux-kernel-dcp/archive/
  hypervisor:
    qemu:
      url: https://github.com/qemu/qemu
      version: v7.2.0
    firecracker:
      version: v1.4.0
    cloud_hypervisor:
      version: v32.0
  image:
    architecture:
      x86_64:
        name: ubuntu
        version: focal
        tdx:
          name: ubuntu
          version: jammy
  initrd:
    architecture:
      x86_64:
        name: alpine
        version: "3.18"
        sev:
          name: ubuntu
          version: focal
        mariner:
          name: cbl-mariner
          version: "2.0"
externals:
  virtiofsd:
    version: v1.8.0
    toolchain: "1.69.0"
  nydus:
    version: v2.2.1
  gperf:
    version: "3.1"
  libseccomp:
    version: "2.5.4"
  attestation-agent:
    version: v0.7.0
  pause:
    version: "3.6"
  ovmf:
    x86_64:
      version: edk2-stable202302
languages:
  golang:
    meta:
      newest-version: "1.20.5"
  rust:
    meta:
      newest-version: "1.69"
"""


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    """Create a minimal kata-containers checkout."""
    root = tmp_path / "repo"
    root.mkdir()
    (root / "versions.yaml").write_text(VERSIONS_YAML)
    (root / "VERSION").write_text("3.2.0-alpha0\n")
    kernel_dir = root / "tools" / "packaging" / "kernel"
    kernel_dir.mkdir(parents=True)
    (kernel_dir / "kata_config_version").write_text("109\n")
    (root / "tools" / "osbuilder").mkdir(parents=True)
    return root


@pytest.fixture
def settings(tmp_path: Path, repo_root: Path) -> Settings:
    """Settings for an x86_64 build in a temporary workdir."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    return Settings(
        workdir=workdir,
        repo_root=repo_root,
        arch="x86_64",
        cache_url=CACHE_URL,
        use_cache=True,
        measured_rootfs=False,
        dm_verity=False,
        aa_kbc=None,
    )


@pytest.fixture
def sources(repo_root: Path) -> VersionSources:
    """Version sources whose git lookups return a fixed commit."""

    class FixedCommitSources(VersionSources):
        def last_modification(self, path: str) -> str:
            return "c0ffee"

    return FixedCommitSources(repo_root, "x86_64", "quay.io/kata-containers/builders")
