"""Shared models, pipeline state and exceptions for the query core."""
