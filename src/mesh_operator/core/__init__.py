"""Core operator infrastructure."""
