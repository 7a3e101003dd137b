"""Bidirectional organisation settings synchronization."""
