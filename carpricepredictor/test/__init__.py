"""
Unit and API tests for the car price predictor.

These tests verify:
- Scalers, metrics, naming and feature encoding
- Tree, forest, boosting and ridge learners and their searches
- Bundle persistence and the trainer CLI on a synthetic CSV
- Atomic hot-swap, gated loading and the HTTP endpoints
"""
