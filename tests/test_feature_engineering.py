"""
Tests for dase_engine.feature_engineering module
-------------------------------------------------
Covers:
- build_user_item_matrix
- create_user_item_mappings
- calculate_global_statistics
- filter_sparse_interactions
"""

import pytest
import pandas as pd
from scipy.sparse import csr_matrix

from dase_engine import feature_engineering


# -------------------------------------------------------------------
# Tests for build_user_item_matrix
# -------------------------------------------------------------------

class TestBuildUserItemMatrix:
    """Unit tests for build_user_item_matrix()"""

    def test_matrix_shape(self, tiny_ratings_df):
        """Output matrix should have shape (n_users, n_items)."""
        matrix, mappings = feature_engineering.build_user_item_matrix(tiny_ratings_df)
        assert isinstance(matrix, csr_matrix)
        assert matrix.shape == (3, 3)
        assert mappings["n_users"] == 3
        assert mappings["n_items"] == 3

    def test_values_placed_by_mapping(self, tiny_ratings_df):
        matrix, mappings = feature_engineering.build_user_item_matrix(tiny_ratings_df)
        u_idx = mappings["user_mapping"]["u2"]
        i_idx = mappings["item_mapping"]["m3"]
        assert matrix[u_idx, i_idx] == 5.0
        assert matrix.nnz == 5

    def test_mappings_bidirectional(self, tiny_ratings_df):
        """User and item mappings should be correct and reversible."""
        _, mappings = feature_engineering.build_user_item_matrix(tiny_ratings_df)
        for user, idx in mappings["user_mapping"].items():
            assert mappings["reverse_user_mapping"][idx] == user
        for item, idx in mappings["item_mapping"].items():
            assert mappings["reverse_item_mapping"][idx] == item


class TestMappings:
    """Tests for create_user_item_mappings()"""

    def test_first_appearance_order(self):
        """Indices follow the order ids first appear in the table."""
        df = pd.DataFrame({"user": ["b", "a", "b"], "item": ["z", "y", "x"], "rating": [1, 2, 3]})
        mappings = feature_engineering.create_user_item_mappings(df)

        assert mappings["user_mapping"] == {"b": 0, "a": 1}
        assert mappings["item_mapping"] == {"z": 0, "y": 1, "x": 2}


# -------------------------------------------------------------------
# Tests for calculate_global_statistics
# -------------------------------------------------------------------

class TestGlobalStatistics:
    """Tests for calculate_global_statistics()"""

    def test_mean_and_biases(self, tiny_ratings_df):
        """Biases are the mean deviation from the global mean."""
        _, mappings = feature_engineering.build_user_item_matrix(tiny_ratings_df)
        stats = feature_engineering.calculate_global_statistics(tiny_ratings_df, mappings)

        assert stats["global_mean"] == pytest.approx(3.8)
        assert stats["user_biases"][mappings["user_mapping"]["u1"]] == pytest.approx(0.2)
        assert stats["user_biases"][mappings["user_mapping"]["u3"]] == pytest.approx(-1.8)
        assert stats["item_biases"][mappings["item_mapping"]["m3"]] == pytest.approx(1.2)

    def test_damping_shrinks_biases(self, tiny_ratings_df):
        _, mappings = feature_engineering.build_user_item_matrix(tiny_ratings_df)
        plain = feature_engineering.calculate_global_statistics(tiny_ratings_df, mappings)
        damped = feature_engineering.calculate_global_statistics(tiny_ratings_df, mappings, damping=5.0)

        assert (abs(damped["user_biases"]) <= abs(plain["user_biases"])).all()
        assert damped["global_mean"] == plain["global_mean"]


# -------------------------------------------------------------------
# Tests for filter_sparse_interactions
# -------------------------------------------------------------------

class TestFilterSparseInteractions:
    """Tests for filter_sparse_interactions()"""

    def test_filters_users_then_items(self, tiny_ratings_df):
        filtered = feature_engineering.filter_sparse_interactions(
            tiny_ratings_df, min_user_interactions=2, min_item_interactions=2)

        # u3 is dropped first, which leaves m2 with a single rating
        assert set(filtered["user"]) == {"u1", "u2"}
        assert set(filtered["item"]) == {"m1"}

    def test_zero_thresholds_keep_everything(self, tiny_ratings_df):
        filtered = feature_engineering.filter_sparse_interactions(
            tiny_ratings_df, min_user_interactions=0, min_item_interactions=0)
        assert len(filtered) == len(tiny_ratings_df)

    def test_input_untouched(self, tiny_ratings_df):
        original = tiny_ratings_df.copy()
        feature_engineering.filter_sparse_interactions(tiny_ratings_df, 3, 3)
        pd.testing.assert_frame_equal(tiny_ratings_df, original)
