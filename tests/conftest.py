"""
Pytest configuration and shared fixtures

This file contains fixtures that are available to all test files.
"""

import pytest
import pandas as pd

from dase_engine.data_source import TrainingData
from dase_engine.engine import EngineFactory
from dase_engine.model_store import FileModelStore, InMemoryModelStore
from dase_engine.preparator import IdentityPreparator

# ---------------------------------------------------
# DataFrame fixtures
# ---------------------------------------------------

@pytest.fixture
def tiny_ratings_df():
    """
    Tiny ratings DataFrame (3 users, 3 items) for unit tests
    """
    return pd.DataFrame({
        'user': ['u1', 'u1', 'u2', 'u2', 'u3'],
        'item': ['m1', 'm2', 'm1', 'm3', 'm2'],
        'rating': [5, 3, 4, 5, 2]
    })


@pytest.fixture
def ratings_df():
    """
    Small but non-trivial ratings table: 6 users, 5 items, 18 ratings.
    Large enough for a rank-2 factorization.
    """
    return pd.DataFrame({
        'user': [1, 1, 1, 2, 2, 2, 3, 3, 3, 4, 4, 4, 5, 5, 5, 6, 6, 6],
        'item': [22, 62, 7, 22, 7, 13, 62, 13, 41, 22, 41, 7, 62, 13, 22, 41, 7, 62],
        'rating': [5.0, 4.0, 2.0, 4.0, 5.0, 3.0, 5.0, 4.0, 2.0,
                   3.0, 5.0, 4.0, 4.0, 5.0, 2.0, 4.0, 3.0, 5.0],
    })


@pytest.fixture
def scenario_ratings_df():
    """The two-row table from the first end-to-end scenario."""
    return pd.DataFrame({
        'user': [1, 1],
        'item': [22, 62],
        'rating': [5.0, 4.0],
    })


@pytest.fixture
def ratings_csv_path(tmp_path, ratings_df):
    """ratings_df written as a headed CSV file."""
    path = tmp_path / "ratings.csv"
    ratings_df.to_csv(path, index=False)
    return path


@pytest.fixture
def prepared_data(ratings_df):
    """ratings_df run through the identity preparator."""
    return IdentityPreparator().prepare(TrainingData(ratings=ratings_df))

# ---------------------------------------------------
# Engine and store fixtures
# ---------------------------------------------------

@pytest.fixture
def memory_store():
    return InMemoryModelStore()


@pytest.fixture
def file_store(tmp_path):
    """File-backed store rooted in a temporary directory."""
    return FileModelStore(tmp_path / "store")


@pytest.fixture
def make_engine():
    """
    Factory for engines reading an in-memory frame.

    Usage:
        engine = make_engine(df, algorithms=[{"name": "als", "params": {...}}])
    """
    def _make(frame, algorithms=None, serving=None, preparator=None, engine_id="test"):
        config = {
            "id": engine_id,
            "datasource": {"name": "frame", "params": {"frame": frame}},
            "algorithms": algorithms or [
                {"name": "als", "params": {"rank": 2, "num_iterations": 10, "seed": 3}}
            ],
        }
        if serving is not None:
            config["serving"] = serving
        if preparator is not None:
            config["preparator"] = preparator
        return EngineFactory().build(config)

    return _make
