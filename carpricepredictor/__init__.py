"""
Used-car price prediction.

- common: scalers, metrics, feature encoding, naming and the error taxonomy
- training: from-scratch learners, hyperparameter searches, bundles and the trainer CLI
- prediction: the active model set, the bundle hot loader and the HTTP API
"""

__all__ = ['common', 'training', 'prediction']
