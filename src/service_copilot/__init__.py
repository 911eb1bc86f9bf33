"""Conversational tool-orchestration engine for field-service operations."""

__version__ = "0.1.0"
