"""
Image tag references.

A package is addressed by a container image tag, ``[registry/]repository[:tag]``.
The platform identifies pushed packages by ``repository:tag`` and pulled
layers by ``[registry/]repository@digest``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

__all__ = ["ImageTag", "DEFAULT_TAG"]

DEFAULT_TAG = "latest"

_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True)
class ImageTag:
    """
    Parsed image tag.

    Attributes:
        repository: Repository path without registry (e.g. ``team/model``)
        tag: Tag name (defaults to ``latest``)
        registry: Registry host, or None for an image without one
    """
    repository: str
    tag: str = DEFAULT_TAG
    registry: Optional[str] = None

    @classmethod
    def parse(cls, text: str, default_registry: Optional[str] = None) -> ImageTag:
        """
        Parse ``[registry/]repository[:tag]``.

        The first path component is taken as a registry when it contains a
        ``.`` or ``:`` or is ``localhost``.

        Raises:
            ValueError: If *text* is empty, pins a digest, or has invalid parts
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("image tag must not be empty")
        if "@" in text:
            raise ValueError(f"invalid tag '{text}': digest references are not accepted, use a tag")

        registry = default_registry
        remainder = text
        first, sep, rest = text.partition("/")
        if sep and _looks_like_registry(first):
            registry, remainder = first, rest

        repository, tag = remainder, DEFAULT_TAG
        last_slash = remainder.rfind("/")
        colon = remainder.rfind(":")
        if colon > last_slash:
            repository, tag = remainder[:colon], remainder[colon + 1:]

        if not repository:
            raise ValueError(f"invalid tag '{text}': missing repository")
        for component in repository.split("/"):
            if not _COMPONENT.match(component):
                raise ValueError(f"invalid tag '{text}': bad repository component '{component}'")
        if not _TAG.match(tag):
            raise ValueError(f"invalid tag '{text}': bad tag '{tag}'")

        return cls(repository=repository, tag=tag, registry=registry)

    @property
    def name(self) -> str:
        """Repository including registry, without tag."""
        return f"{self.registry}/{self.repository}" if self.registry else self.repository

    @property
    def repo_tag(self) -> str:
        """``repository:tag`` as the package service keys pushes."""
        return f"{self.repository}:{self.tag}"

    def digest_ref(self, digest: str) -> str:
        """Content reference ``[registry/]repository@digest``."""
        return f"{self.name}@{digest}"

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"
