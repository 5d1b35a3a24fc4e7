"""Resilient AI completion and document extraction gateway."""
