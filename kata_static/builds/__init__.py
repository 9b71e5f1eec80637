"""Build orchestration module.

This module handles:
- The registry of build targets and their handlers
- Running the external static builders
- Installing components from cache or by building them
- Final tarball assembly
"""

from kata_static.builds.registry import InvalidTargetError, parse_target, parse_targets

__all__ = ["InvalidTargetError", "parse_target", "parse_targets"]

# Lazy imports for submodules to avoid circular imports
# Access via kata_static.builds.dispatcher, etc.
