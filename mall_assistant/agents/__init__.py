"""Agents package: rule-based recognition, disambiguation and intent classification."""
