"""Utility helpers: field selectors, rounding and display formatting."""
