"""Service layer for mesh-operator."""
