"""Integrations with external systems (Kubernetes API, helm)."""
