"""Specification models and discovery exports."""

from .loader import SpecDiscovery, SpecLoadError
from .models import (
    ArtifactKind,
    SpecArtifacts,
    SpecId,
    Specification,
    WorkflowCommandKind,
    WorkflowPhase,
)

__all__ = [
    "ArtifactKind",
    "SpecArtifacts",
    "SpecDiscovery",
    "SpecId",
    "SpecLoadError",
    "Specification",
    "WorkflowCommandKind",
    "WorkflowPhase",
]
