"""Mesh operator - control plane for service mesh installations."""

from mesh_operator.__version__ import __version__

__all__ = ["__version__"]
