"""Shared helpers: configuration constants, hashing, environment."""
