"""
Data models for platform API responses and container image documents.

These Pydantic models give type safety and validation at the boundary where
JSON arrives from the platform or from a registry, so transfer code works
with typed objects instead of raw dictionaries.
"""
from __future__ import annotations

import hashlib
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Media types used when building and parsing image manifests
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_CONFIG_V1 = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"
OCI_MANIFEST_V1 = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX_V1 = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG_V1 = "application/vnd.oci.image.config.v1+json"
OCI_LAYER_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"

CONFIG_MEDIA_TYPES = {DOCKER_CONFIG_V1, OCI_CONFIG_V1}


def sha256_digest(data: bytes) -> str:
    """Return 'sha256:<hex>' digest for *data*."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def short_digest(digest: str) -> str:
    """First 10 hex characters of a digest, for display."""
    return digest.partition(":")[2][:10] or digest[:10]


class _ApiModel(BaseModel):
    """Base for API payloads: accept aliases and field names, ignore unknown keys."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Artifacts

class ArtifactData(_ApiModel):
    """Link to the artifact's content endpoint."""
    self_: Optional[str] = Field(default=None, alias="self", description="Content URL")


class ArtifactRecord(_ApiModel):
    """Artifact record as returned by create/read."""
    id: str = Field(..., description="Artifact URN")
    name: Optional[str] = Field(default=None, description="Human friendly name")
    status: Optional[str] = Field(default=None, description="Upload status")
    mime_type: Optional[str] = Field(default=None, alias="mime-type", description="Content type")
    size: Optional[int] = Field(default=None, description="Content size in bytes")
    collection: Optional[str] = Field(default=None)
    policy: Optional[str] = Field(default=None)
    data: Optional[ArtifactData] = Field(default=None, description="Content link")


class ArtifactList(_ApiModel):
    """One page of artifacts."""
    items: List[ArtifactRecord] = Field(default_factory=list)
    next_page: Optional[str] = Field(default=None, alias="next-page")


# Packages

class PushResponse(_ApiModel):
    """Reply to a package push POST (config, layer probe, or manifest)."""
    digest: Optional[str] = None
    location: Optional[str] = None
    mounted: Optional[bool] = None


class PatchResponse(_ApiModel):
    """Reply to a layer chunk PATCH; carries the location for the next chunk."""
    location: Optional[str] = None


class PackageList(_ApiModel):
    """Tags visible to the current account."""
    items: List[str] = Field(default_factory=list)


# Image documents

class Platform(_ApiModel):
    architecture: str = ""
    os: str = ""
    variant: Optional[str] = None


class Descriptor(_ApiModel):
    """Content descriptor: what a manifest says about one blob."""
    media_type: str = Field(default="", alias="mediaType")
    size: int = Field(..., ge=0)
    digest: str = Field(..., pattern=r"^[a-z0-9]+:[a-f0-9]+$")
    platform: Optional[Platform] = None


class ImageManifest(_ApiModel):
    """Single-platform image manifest (Docker schema 2 or OCI)."""
    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=DOCKER_MANIFEST_V2, alias="mediaType")
    config: Descriptor
    layers: List[Descriptor] = Field(default_factory=list)


class ManifestList(_ApiModel):
    """Multi-platform manifest list / OCI image index."""
    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=DOCKER_MANIFEST_LIST, alias="mediaType")
    manifests: List[Descriptor] = Field(default_factory=list)
