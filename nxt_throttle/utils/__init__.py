"""Shared helpers: YAML loading and logging configuration."""
