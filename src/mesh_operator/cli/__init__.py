"""Command line interface for the mesh operator."""
