"""Conversation protocol: history, goals, prompts, reply parsing and the turn state machine."""
