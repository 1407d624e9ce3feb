"""
Prediction server for used-car prices.

This package contains:
- ActiveModelSet: the immutable, atomically swapped serving snapshot
- ModelHotLoader: per-key gated loading of the requested bundle
- prediction_server: the FastAPI application
"""

__all__ = ['active_model', 'hot_loader', 'prediction_server']
