"""Mesh and MeshRevision reconciliation services."""

from mesh_operator.services.mesh.exceptions import (
    MeshError,
    MeshValidationError,
    ProfileError,
)

__all__ = [
    "MeshError",
    "MeshValidationError",
    "ProfileError",
]
