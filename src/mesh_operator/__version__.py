"""Version information for mesh_operator."""

__version__ = "0.1.0"
