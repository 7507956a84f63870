"""Artifact and source reference schemas.

ArtifactReference identifies one buildable unit: a build identifier plus the
container image (repository and tag) produced for it. Tags follow the
build-counter scheme used by the CI server: a positive integer that grows
monotonically with each build.

Example:
    >>> ref = ArtifactReference.create("42", "registry.example.com/shop/api", "42")
    >>> ref.image
    'registry.example.com/shop/api:42'
    >>> ref.build_number
    42
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

from ferry_core.errors import ValidationError

BUILD_TAG_PATTERN = re.compile(r"^[1-9][0-9]*$")
"""Build-counter tag: positive integer without leading zeros."""

REPOSITORY_PATTERN = re.compile(
    r"^[a-z0-9]+(?:[._-][a-z0-9]+)*(?::[0-9]+)?(?:/[a-z0-9]+(?:[._-][a-z0-9]+)*)*$"
)
"""Image repository: optional registry host[:port] followed by path components."""


class SourceReference(BaseModel):
    """Reference to the checked-out source a pipeline run builds from.

    Attributes:
        path: Local path of the source checkout.
        build_number: CI build counter assigned to this run.
        revision: VCS revision of the checkout (informational).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = Field(..., min_length=1, description="Local path of the source checkout")
    build_number: int = Field(..., ge=1, description="CI build counter")
    revision: str | None = Field(default=None, description="VCS revision")


class ArtifactReference(BaseModel):
    """Immutable reference to a built and pushed container image.

    Use ArtifactReference.create() to construct validated instances.

    Attributes:
        identifier: Build identifier (build number or content hash).
        repository: Image repository (e.g. "registry.example.com/shop/api").
        tag: Image tag (build counter).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    identifier: str = Field(..., min_length=1)
    repository: str = Field(..., min_length=1)
    tag: str = Field(..., min_length=1)

    @classmethod
    def create(cls, identifier: str, repository: str, tag: str) -> ArtifactReference:
        """Create a validated ArtifactReference.

        Args:
            identifier: Build identifier; must not be empty.
            repository: Image repository.
            tag: Build-counter tag, e.g. "42".

        Returns:
            The new ArtifactReference.

        Raises:
            ValidationError: If any component is empty or malformed.
        """
        if not identifier or not identifier.strip():
            raise ValidationError("identifier", "must not be empty")
        if not repository or not REPOSITORY_PATTERN.match(repository):
            raise ValidationError("repository", f"'{repository}' is not a valid image repository")
        if not BUILD_TAG_PATTERN.match(tag or ""):
            raise ValidationError(
                "tag", f"'{tag}' is not a build counter (expected a positive integer)"
            )
        return cls(identifier=identifier.strip(), repository=repository, tag=tag)

    @property
    def image(self) -> str:
        """Full image reference, ``repository:tag``."""
        return f"{self.repository}:{self.tag}"

    @property
    def build_number(self) -> int:
        """Numeric value of the build-counter tag."""
        return int(self.tag)


__all__ = ["ArtifactReference", "BUILD_TAG_PATTERN", "SourceReference"]
