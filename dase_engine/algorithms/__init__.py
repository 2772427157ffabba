"""Algorithm registry: engine document names -> implementations."""

from .base import Algorithm, Model, rank_top_items
from .als import ALSAlgorithm, ALSModel
from .svd import SVDAlgorithm, SVDModel
from .item_similarity import ItemSimilarityAlgorithm, ItemSimilarityModel

ALGORITHMS = {
    ALSAlgorithm.name: ALSAlgorithm,
    SVDAlgorithm.name: SVDAlgorithm,
    ItemSimilarityAlgorithm.name: ItemSimilarityAlgorithm,
}

# Model type -> class, used when loading persisted models
MODEL_CLASSES = {
    ALSModel.model_type: ALSModel,
    SVDModel.model_type: SVDModel,
    ItemSimilarityModel.model_type: ItemSimilarityModel,
}

__all__ = [
    "Algorithm",
    "Model",
    "rank_top_items",
    "ALSAlgorithm",
    "ALSModel",
    "SVDAlgorithm",
    "SVDModel",
    "ItemSimilarityAlgorithm",
    "ItemSimilarityModel",
    "ALGORITHMS",
    "MODEL_CLASSES",
]
