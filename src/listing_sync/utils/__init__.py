"""Shared helpers: configuration, logging, errors, retry and dates."""
