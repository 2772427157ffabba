"""
Serving Module

Combines the per-algorithm results for one query into the final result.
Results arrive in algorithm registration order; algorithms that failed for
the query are simply absent from the sequence.
"""

import logging
from collections import OrderedDict
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence

import numpy as np

from .algorithms.base import rank_top_items
from .exceptions import NoPredictionAvailable
from .prediction import PredictionResult, Query

logger = logging.getLogger(__name__)


class Serving:
    """Default policy: return the first algorithm's result."""

    name = "first"

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        self.params = MappingProxyType(dict(params or {}))

    def serve(self, query: Query, results: Sequence[PredictionResult]) -> PredictionResult:
        if not results:
            raise NoPredictionAvailable(f"No algorithm produced a prediction for user '{query.user}'")
        return self.combine(query, list(results))

    def combine(self, query: Query, results: Sequence[PredictionResult]) -> PredictionResult:
        return results[0]


FirstServing = Serving


class WeightedMergeServing(Serving):
    """
    Weighted average of item scores across algorithms.

    Params:
        weights: {algorithm_name: weight}; unlisted algorithms weigh 1.0

    An item's merged score averages over the results that contain it, so an
    item ranked by only one algorithm is not penalized. Items are de-duplicated
    and re-ranked; ties keep first-seen order.
    """

    name = "weighted_merge"

    def combine(self, query: Query, results: Sequence[PredictionResult]) -> PredictionResult:
        weights = self.params.get("weights", {}) or {}
        totals = OrderedDict()
        for result in results:
            weight = float(weights.get(result.source, 1.0)) if result.source else 1.0
            if weight <= 0:
                continue
            for item_score in result.item_scores:
                score_sum, weight_sum = totals.get(item_score.item, (0.0, 0.0))
                totals[item_score.item] = (score_sum + weight * item_score.score,
                                           weight_sum + weight)

        if not totals:
            raise NoPredictionAvailable(f"All results for user '{query.user}' were weighted out")

        items = list(totals.keys())
        scores = np.array([s / w for s, w in totals.values()])
        return PredictionResult.from_pairs(rank_top_items(scores, items, query.num))


SERVINGS = {
    FirstServing.name: FirstServing,
    WeightedMergeServing.name: WeightedMergeServing,
}
