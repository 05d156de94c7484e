"""Orchestration package: task planning, executors and the per-turn query pipeline."""
