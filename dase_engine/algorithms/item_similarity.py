"""
Item Similarity Algorithm

Item-item collaborative filtering. Items are compared by the cosine of their
rating columns; a user's score for an item is the similarity-weighted mean of
the ratings that user gave.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.sparse import csr_matrix
from sklearn.metrics.pairwise import cosine_similarity

from .. import config
from ..feature_engineering import build_user_item_matrix
from ..preparator import PreparedData
from .base import Algorithm, Model

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ItemSimilarityModel(Model):
    model_type = "item_similarity"

    similarity: np.ndarray  # Shape: (n_items, n_items)
    ratings_data: np.ndarray  # CSR components of the user-item matrix
    ratings_indices: np.ndarray
    ratings_indptr: np.ndarray
    min_similarity: float = 0.0

    def user_scores(self, user_idx: int) -> np.ndarray:
        start, end = self.ratings_indptr[user_idx], self.ratings_indptr[user_idx + 1]
        rated = self.ratings_indices[start:end]
        values = self.ratings_data[start:end]

        sims = self.similarity[:, rated]
        sims = np.where(sims >= self.min_similarity, sims, 0.0)
        numerator = sims @ values
        denominator = np.abs(sims).sum(axis=1)
        return np.divide(numerator, denominator,
                         out=np.zeros(self.n_items), where=denominator > 0)

    def get_model_info(self) -> dict:
        info = super().get_model_info()
        info.update({"algorithm": "Item-Item Cosine Similarity",
                     "min_similarity": self.min_similarity})
        return info


class ItemSimilarityAlgorithm(Algorithm):
    """
    Params:
        min_similarity: Neighbours below this cosine similarity are ignored
    """

    name = "item_similarity"
    model_class = ItemSimilarityModel
    default_params = config.ITEM_SIMILARITY_CONFIG

    def _fit(self, data: PreparedData) -> ItemSimilarityModel:
        ratings_df = data.ratings.drop_duplicates(subset=["user", "item"], keep="last")
        matrix, mappings = build_user_item_matrix(ratings_df)
        matrix = csr_matrix(matrix)
        matrix.sort_indices()

        similarity = cosine_similarity(matrix.T, dense_output=True)
        logger.info(f"Item similarity: {mappings['n_items']} items from {mappings['n_users']} users")

        return ItemSimilarityModel(
            user_ids=[mappings['reverse_user_mapping'][i] for i in range(mappings['n_users'])],
            item_ids=[mappings['reverse_item_mapping'][i] for i in range(mappings['n_items'])],
            similarity=np.asarray(similarity),
            ratings_data=matrix.data,
            ratings_indices=matrix.indices,
            ratings_indptr=matrix.indptr,
            min_similarity=float(self.params["min_similarity"]),
        )
