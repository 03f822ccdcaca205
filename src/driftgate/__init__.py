"""
driftgate - Quality regression gate for a document retrieval engine.

Capture before/after baselines, diff them, block on drift.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
