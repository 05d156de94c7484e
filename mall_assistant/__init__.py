"""
Mall Assistant query core.

Turns a free-text utterance about the mall's merchant dataset into a resolved
merchant, a validated task plan and a structured analytical result.
"""

__version__ = "3.0.0"
