"""Persistence layer: models, sessions and dialect-aware upserts."""
