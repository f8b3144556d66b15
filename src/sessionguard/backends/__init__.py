"""Persistence backends for auth state."""
