"""
Preparator Module

Turns TrainingData into PreparedData. Preparation is a pure function of its
input: no I/O and no randomness, so it can be re-run or cached safely.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

import numpy as np
import pandas as pd

from . import config
from .data_source import RATING_COLUMNS, TrainingData
from .exceptions import InvalidTrainingData
from .feature_engineering import filter_sparse_interactions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedData:
    """
    Ratings ready for training (user/item as str, rating as float).

    Shared by every algorithm of a train run; algorithms read it and
    never write to it.
    """
    ratings: pd.DataFrame

    @property
    def n_users(self) -> int:
        return int(self.ratings["user"].nunique())

    @property
    def n_items(self) -> int:
        return int(self.ratings["item"].nunique())

    def __len__(self):
        return len(self.ratings)


class Preparator:
    """Base preparator: validates the ratings and re-wraps them unchanged."""

    name = "identity"

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        self.params = MappingProxyType(dict(params or {}))

    def prepare(self, training_data: TrainingData) -> PreparedData:
        ratings = self._validate(training_data.ratings)
        return PreparedData(ratings=self.transform(ratings))

    def transform(self, ratings: pd.DataFrame) -> pd.DataFrame:
        """Feature selection hook for subclasses. Receives a validated copy."""
        return ratings

    @staticmethod
    def _validate(df: pd.DataFrame) -> pd.DataFrame:
        if not isinstance(df, pd.DataFrame):
            raise InvalidTrainingData(f"ratings must be a DataFrame, got {type(df).__name__}")

        missing = [c for c in RATING_COLUMNS if c not in df.columns]
        if missing:
            raise InvalidTrainingData(f"Missing required columns: {', '.join(missing)}")

        if len(df) == 0:
            raise InvalidTrainingData("Training data is empty")

        for col in ("user", "item"):
            n_null = int(df[col].isna().sum())
            if n_null:
                raise InvalidTrainingData(f"{n_null} rows have a null '{col}' id")

        ratings = pd.to_numeric(df["rating"], errors="coerce")
        bad = ~np.isfinite(ratings.astype(float).to_numpy())
        if bad.any():
            raise InvalidTrainingData(
                f"{int(bad.sum())} rows have a missing or non-numeric rating"
            )

        out = pd.DataFrame({
            "user": df["user"].astype(str).str.strip(),
            "item": df["item"].astype(str).str.strip(),
            "rating": ratings.astype(float),
        })
        if (out["user"] == "").any() or (out["item"] == "").any():
            raise InvalidTrainingData("Empty user or item id")
        return out.reset_index(drop=True)


# Identity is the default preparator
IdentityPreparator = Preparator


class FilteringPreparator(Preparator):
    """
    Drops out-of-range ratings and sparse users/items.

    Params:
        min_rating / max_rating: Inclusive rating bounds (None disables)
        min_user_interactions: Minimum ratings per user
        min_item_interactions: Minimum ratings per item
    """

    name = "filtering"

    def transform(self, ratings: pd.DataFrame) -> pd.DataFrame:
        params = {**config.PREPROCESSING_CONFIG, **self.params}
        df = ratings
        min_rating = params["min_rating"]
        max_rating = params["max_rating"]
        if min_rating is not None:
            df = df[df["rating"] >= float(min_rating)]
        if max_rating is not None:
            df = df[df["rating"] <= float(max_rating)]

        df = filter_sparse_interactions(
            df,
            min_user_interactions=int(params["min_user_interactions"]),
            min_item_interactions=int(params["min_item_interactions"]),
        )

        if len(df) == 0:
            raise InvalidTrainingData("No ratings left after filtering")

        logger.info(f"Filtering kept {len(df)}/{len(ratings)} ratings "
                    f"({len(df) / len(ratings) * 100:.1f}% retained)")
        return df.reset_index(drop=True)
