"""
Offline training for per make/model price models.

This package contains:
- A CART decision tree, random forest and gradient boosting written on numpy
- Ridge/linear regression with a k-fold regularisation search
- Residual stacking of the tree ensembles on top of ridge
- ModelBundle persistence (one checksummed JSON file per make/model)
- The trainer CLI that turns the vehicles CSV into bundles
"""

__all__ = ['trainer', 'model_bundle']
