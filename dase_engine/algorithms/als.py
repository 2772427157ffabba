"""
ALS Recommendation Algorithm

Explicit-feedback matrix factorization trained with alternating least squares.
Prediction formula: r_ui = x_u^T * y_i

Each half-step solves a ridge regression per user (or per item) with the
other side's factors held fixed; the regularization is scaled by the number
of ratings of that user/item (weighted-lambda regularization).
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.sparse import csr_matrix

from .. import config
from ..exceptions import TrainFailure
from ..feature_engineering import build_user_item_matrix
from ..preparator import PreparedData
from .base import Algorithm, Model

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ALSModel(Model):
    model_type = "als"

    user_factors: np.ndarray  # Shape: (n_users, rank)
    item_factors: np.ndarray  # Shape: (n_items, rank)
    rank: int

    def user_scores(self, user_idx: int) -> np.ndarray:
        return self.item_factors @ self.user_factors[user_idx]

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info.update({"algorithm": "Alternating Least Squares", "rank": self.rank})
        return info


def _solve_factors(ratings: csr_matrix, fixed: np.ndarray, lam: float) -> np.ndarray:
    """
    Solve every row's factors given the fixed factors of the other side.

    Rows without ratings get zero factors.
    """
    n_rows = ratings.shape[0]
    rank = fixed.shape[1]
    out = np.zeros((n_rows, rank))
    eye = np.eye(rank)

    for row in range(n_rows):
        start, end = ratings.indptr[row], ratings.indptr[row + 1]
        if start == end:
            continue
        idx = ratings.indices[start:end]
        vals = ratings.data[start:end]
        f = fixed[idx]
        a = f.T @ f + lam * len(idx) * eye
        b = f.T @ vals
        out[row] = np.linalg.solve(a, b)
    return out


class ALSAlgorithm(Algorithm):
    """
    Params:
        rank: Number of latent factors
        num_iterations: Number of alternating sweeps
        lambda: Regularization parameter
        seed: Seed for the factor initialization (training is deterministic per seed)
    """

    name = "als"
    model_class = ALSModel
    default_params = config.ALS_CONFIG

    def _fit(self, data: PreparedData) -> ALSModel:
        rank = int(self.params["rank"])
        n_iterations = int(self.params["num_iterations"])
        lam = float(self.params["lambda"])
        if rank < 1:
            raise TrainFailure(f"rank must be at least 1, got {rank}")
        if n_iterations < 1:
            raise TrainFailure(f"num_iterations must be at least 1, got {n_iterations}")
        if lam < 0:
            raise TrainFailure(f"lambda must be non-negative, got {lam}")

        # Repeated (user, item) pairs keep the latest rating
        ratings_df = data.ratings.drop_duplicates(subset=["user", "item"], keep="last")
        matrix, mappings = build_user_item_matrix(ratings_df)
        logger.info(f"ALS: {mappings['n_users']} users x {mappings['n_items']} items, "
                    f"rank={rank}, iterations={n_iterations}, lambda={lam}")

        rng = np.random.default_rng(self.params.get("seed"))
        user_factors = rng.normal(scale=0.1, size=(mappings["n_users"], rank))
        item_factors = rng.normal(scale=0.1, size=(mappings["n_items"], rank))

        by_user = matrix.tocsr()
        by_item = matrix.T.tocsr()
        for _ in range(n_iterations):
            user_factors = _solve_factors(by_user, item_factors, lam)
            item_factors = _solve_factors(by_item, user_factors, lam)

        return ALSModel(
            user_ids=[mappings["reverse_user_mapping"][i] for i in range(mappings["n_users"])],
            item_ids=[mappings["reverse_item_mapping"][i] for i in range(mappings["n_items"])],
            user_factors=user_factors,
            item_factors=item_factors,
            rank=rank,
        )
