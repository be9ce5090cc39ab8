"""Seed statement templates (YAML)."""
