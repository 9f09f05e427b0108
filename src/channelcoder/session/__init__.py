"""Conversation sessions: state models, storage and detached reconciliation."""
