"""Version fingerprint computation for cached components.

This module handles:
- Declaring which version facts feed a component's fingerprint
- Resolving declarations to concrete values through VersionSources
- Joining resolved values into the fingerprint string

A fingerprint is the value published as the cache's ``latest`` pointer,
so its format must stay compatible with the tarballs already published:
fact values joined in declaration order with ``-``. No length prefix and
no hashing are applied, which means two different fact lists can collide
when a value itself contains the separator (``"a-b" + "c"`` and
``"a" + "b-c"``). Changing this would invalidate every published cache
entry, so the plain join is kept on purpose.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kata_static.types import FactKind

if TYPE_CHECKING:
    from kata_static.config import Settings
    from kata_static.versions import VersionSources

logger = logging.getLogger(__name__)

# Separator placed between fact values
FINGERPRINT_SEPARATOR = "-"


@dataclass(frozen=True)
class FactSource:
    """Declaration of a single fingerprint fact.

    Attributes:
        kind: Where the value comes from.
        keys: Manifest path, repository-relative path(s), settings field
              or literal value, depending on ``kind``.
    """

    kind: FactKind
    keys: tuple[str, ...]

    def describe(self) -> str:
        """Human readable form used in log messages."""
        return f"{self.kind.value}:{','.join(self.keys)}"


@dataclass(frozen=True)
class Fact:
    """A resolved fingerprint fact."""

    kind: FactKind
    value: str


def manifest(path: str) -> FactSource:
    """Declare a dependency version read from the versions manifest."""
    return FactSource(FactKind.MANIFEST, (path,))


def toolchain(path: str) -> FactSource:
    """Declare a toolchain version read from the versions manifest."""
    return FactSource(FactKind.TOOLCHAIN, (path,))


def source(path: str) -> FactSource:
    """Declare the last commit touching a repository subtree."""
    return FactSource(FactKind.SOURCE, (path,))


def digest(*paths: str) -> FactSource:
    """Declare a content digest over one or more repository subtrees."""
    return FactSource(FactKind.DIGEST, tuple(paths))


def file_contents(path: str) -> FactSource:
    """Declare the stripped contents of a repository file."""
    return FactSource(FactKind.FILE, (path,))


def builder_image(path: str) -> FactSource:
    """Declare the builder image name for a static-build directory."""
    return FactSource(FactKind.IMAGE, (path,))


def setting(name: str) -> FactSource:
    """Declare a value taken from the effective settings."""
    return FactSource(FactKind.SETTING, (name,))


def literal(value: str) -> FactSource:
    """Declare a fixed value."""
    return FactSource(FactKind.LITERAL, (value,))


def resolve_fact(
    declaration: FactSource,
    sources: VersionSources,
    settings: Settings,
) -> Fact:
    """Resolve one fact declaration to its current value.

    Args:
        declaration: Fact declaration.
        sources: Version sources for manifest and repository lookups.
        settings: Effective settings of the target being built.

    Returns:
        Resolved Fact.

    Raises:
        VersionLookupError: If the value cannot be determined.
    """
    kind = declaration.kind
    key = declaration.keys[0]

    if kind in (FactKind.MANIFEST, FactKind.TOOLCHAIN):
        value = sources.manifest_value(key)
    elif kind == FactKind.SOURCE:
        value = sources.last_modification(key)
    elif kind == FactKind.DIGEST:
        value = sources.tree_digest(*declaration.keys)
    elif kind == FactKind.FILE:
        value = sources.file_contents(key)
    elif kind == FactKind.IMAGE:
        value = sources.builder_image_name(key)
    elif kind == FactKind.SETTING:
        raw = getattr(settings, key)
        value = "" if raw is None else str(raw)
    else:
        value = key

    return Fact(kind=kind, value=value)


def resolve_facts(
    declarations: Iterable[FactSource],
    sources: VersionSources,
    settings: Settings,
) -> list[Fact]:
    """Resolve an ordered list of fact declarations.

    Args:
        declarations: Fact declarations in fingerprint order.
        sources: Version sources for manifest and repository lookups.
        settings: Effective settings of the target being built.

    Returns:
        Resolved facts, same order as the declarations.
    """
    facts = []
    for declaration in declarations:
        fact = resolve_fact(declaration, sources, settings)
        logger.debug("Fact %s = %s", declaration.describe(), fact.value)
        facts.append(fact)
    return facts


def compute_fingerprint(
    facts: Sequence[Fact],
    separator: str = FINGERPRINT_SEPARATOR,
) -> str:
    """Join fact values into a fingerprint string.

    Args:
        facts: Resolved facts in fingerprint order.
        separator: Separator placed between values.

    Returns:
        Fingerprint string.
    """
    return separator.join(fact.value for fact in facts)


__all__ = [
    "FINGERPRINT_SEPARATOR",
    "Fact",
    "FactSource",
    "builder_image",
    "compute_fingerprint",
    "digest",
    "file_contents",
    "literal",
    "manifest",
    "resolve_fact",
    "resolve_facts",
    "setting",
    "source",
    "toolchain",
]
