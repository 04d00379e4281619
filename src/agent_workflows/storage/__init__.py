"""Persistence helpers and ORM tables."""
