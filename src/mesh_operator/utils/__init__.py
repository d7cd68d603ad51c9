"""Utility modules for mesh-operator."""
