"""Conversation state machine, persistence and the per-turn orchestrator."""
