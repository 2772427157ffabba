"""
SVD Recommendation Algorithm

Singular Value Decomposition with bias terms for collaborative filtering.
Prediction formula: r_ui = μ + b_u + b_i + q_i^T * p_u

Where:
- μ = global mean rating
- b_u = user bias
- b_i = item bias
- q_i = item latent factors
- p_u = user latent factors
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import svds

from .. import config
from ..feature_engineering import build_user_item_matrix, calculate_global_statistics
from ..preparator import PreparedData
from .base import Algorithm, Model

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SVDModel(Model):
    model_type = "svd"

    user_factors: np.ndarray  # Shape: (n_users, k)
    item_factors: np.ndarray  # Shape: (n_items, k)
    user_bias: np.ndarray  # Shape: (n_users,)
    item_bias: np.ndarray  # Shape: (n_items,)
    global_mean: float
    n_factors: int

    def user_scores(self, user_idx: int) -> np.ndarray:
        return (self.item_factors @ self.user_factors[user_idx] +
                self.global_mean +
                self.user_bias[user_idx] +
                self.item_bias)

    def predict_rating(self, user: str, item: str) -> float:
        """
        Predict rating for a single user-item pair, clipped to [1, 5].

        Unknown users or items get the global mean.
        """
        user_idx = self.user_index.get(str(user))
        try:
            item_idx = self.item_ids.index(str(item))
        except ValueError:
            item_idx = None
        if user_idx is None or item_idx is None:
            return float(self.global_mean)

        prediction = (np.dot(self.user_factors[user_idx], self.item_factors[item_idx]) +
                      self.global_mean +
                      self.user_bias[user_idx] +
                      self.item_bias[item_idx])
        return float(np.clip(prediction, 1.0, 5.0))

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info.update({
            "algorithm": "Improved SVD with Bias Terms",
            "n_factors": self.n_factors,
            "matrix_size": f"{self.n_users}×{self.n_items}",
        })
        return info


class SVDAlgorithm(Algorithm):
    """
    Params:
        n_factors: Number of latent factors (capped below min(n_users, n_items))
        regularization: Damping added to the bias denominators
    """

    name = "svd"
    model_class = SVDModel
    default_params = config.SVD_CONFIG

    def _fit(self, data: PreparedData) -> SVDModel:
        n_factors = int(self.params["n_factors"])
        regularization = float(self.params["regularization"])

        ratings_df = data.ratings.drop_duplicates(subset=["user", "item"], keep="last")
        _, mappings = build_user_item_matrix(ratings_df)
        global_stats = calculate_global_statistics(ratings_df, mappings, damping=regularization)
        logger.info(f"SVD: {mappings['n_users']} users x {mappings['n_items']} items, "
                    f"global mean {global_stats['global_mean']:.3f}")

        # Subtract biases: r_adjusted = r - global_mean - user_bias - item_bias
        user_indices = ratings_df['user'].map(mappings['user_mapping']).to_numpy()
        item_indices = ratings_df['item'].map(mappings['item_mapping']).to_numpy()
        adjusted_ratings = (
            ratings_df['rating'].to_numpy() -
            global_stats['global_mean'] -
            global_stats['user_biases'][user_indices] -
            global_stats['item_biases'][item_indices]
        )
        adjusted_matrix = csr_matrix(
            (adjusted_ratings, (user_indices, item_indices)),
            shape=(mappings['n_users'], mappings['n_items']),
            dtype=np.float64
        )

        k = min(n_factors, min(mappings['n_users'], mappings['n_items']) - 1)
        if k >= 1:
            # Fixed start vector keeps ARPACK deterministic across runs
            v0 = np.ones(min(adjusted_matrix.shape)) / np.sqrt(min(adjusted_matrix.shape))
            U, sigma, Vt = svds(adjusted_matrix, k=k, v0=v0)
            user_factors = U * sigma
            item_factors = Vt.T
        else:
            logger.info("SVD: matrix too small for a decomposition, using bias terms only")
            k = 0
            user_factors = np.zeros((mappings['n_users'], 0))
            item_factors = np.zeros((mappings['n_items'], 0))

        return SVDModel(
            user_ids=[mappings['reverse_user_mapping'][i] for i in range(mappings['n_users'])],
            item_ids=[mappings['reverse_item_mapping'][i] for i in range(mappings['n_items'])],
            user_factors=user_factors,
            item_factors=item_factors,
            user_bias=global_stats['user_biases'],
            item_bias=global_stats['item_biases'],
            global_mean=float(global_stats['global_mean']),
            n_factors=k,
        )
