"""
DASE Prediction Engine

This package contains modular components for:
- Data source reading and preparation (ratings tables)
- Pluggable algorithms (ALS, SVD, item similarity)
- Serving policies that combine per-algorithm results
- Versioned model store with an atomically swapped "current" instance
- Training orchestration and the query/deploy runtime
- Serving (Flask API) and operator console
"""

__version__ = "1.0.0"
