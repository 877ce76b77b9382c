"""Artifact storage."""

from .artifacts import ArtifactRef, ArtifactStore, calculate_md5, is_within

__all__ = ["ArtifactRef", "ArtifactStore", "calculate_md5", "is_within"]
