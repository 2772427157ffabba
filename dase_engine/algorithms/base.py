"""
Algorithm capability and model base classes.

An Algorithm is configured once with its params and then only exposes
train(prepared) -> Model and predict(model, query) -> PredictionResult.
It keeps no state between calls, so retraining with the same instance is
safe and concurrent predicts against one model need no locking.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..exceptions import PredictionFailure, TrainFailure
from ..prediction import PredictionResult, Query
from ..preparator import PreparedData

logger = logging.getLogger(__name__)


def frozen_array(values, dtype=None) -> np.ndarray:
    """Copy `values` into a read-only numpy array."""
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


def rank_top_items(scores: np.ndarray, item_ids: Sequence[str],
                   num: int) -> List[Tuple[str, float]]:
    """
    Return the `num` highest scoring (item, score) pairs.

    Ties keep ascending item index order (stable sort), so repeated calls on
    the same model always return the same ranking.
    """
    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind="stable")[:num]
    return [(item_ids[i], float(scores[i])) for i in order]


@dataclass(frozen=True, eq=False)
class Model(ABC):
    """
    Trained artifact shared by user/item based models.

    Subclasses add their learned arrays as fields. Arrays are stored
    read-only; a model is never modified after train() returns it.
    """

    model_type: ClassVar[str] = "base"

    user_ids: Tuple[str, ...]
    item_ids: Tuple[str, ...]
    user_index: Dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "user_ids", tuple(str(u) for u in self.user_ids))
        object.__setattr__(self, "item_ids", tuple(str(i) for i in self.item_ids))
        object.__setattr__(self, "user_index", MappingProxyType(
            {u: idx for idx, u in enumerate(self.user_ids)}))
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                object.__setattr__(self, f.name, frozen_array(value))

    @property
    def n_users(self) -> int:
        return len(self.user_ids)

    @property
    def n_items(self) -> int:
        return len(self.item_ids)

    @abstractmethod
    def user_scores(self, user_idx: int) -> np.ndarray:
        """Score every item for the user at `user_idx` (shape: n_items)."""

    def is_finite(self) -> bool:
        return all(
            np.isfinite(getattr(self, f.name)).all()
            for f in fields(self)
            if isinstance(getattr(self, f.name), np.ndarray)
            and np.issubdtype(getattr(self, f.name).dtype, np.number)
        )

    def to_state(self) -> Tuple[Dict[str, Any], Dict[str, np.ndarray]]:
        """
        Split the model into JSON-able scalars and named arrays.

        Returns:
            Tuple of (meta, arrays). Ids travel as unicode arrays so the
            whole state loads without pickle.
        """
        meta: Dict[str, Any] = {}
        arrays: Dict[str, np.ndarray] = {
            "user_ids": np.array(self.user_ids, dtype=str),
            "item_ids": np.array(self.item_ids, dtype=str),
        }
        for f in fields(self):
            if not f.init or f.name in ("user_ids", "item_ids"):
                continue
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                arrays[f.name] = value
            else:
                meta[f.name] = value
        return meta, arrays

    @classmethod
    def from_state(cls, meta: Dict[str, Any], arrays: Mapping[str, np.ndarray]) -> "Model":
        kwargs: Dict[str, Any] = dict(meta)
        for name, arr in arrays.items():
            kwargs[name] = arr
        kwargs["user_ids"] = tuple(arrays["user_ids"].tolist())
        kwargs["item_ids"] = tuple(arrays["item_ids"].tolist())
        return cls(**kwargs)

    def get_model_info(self) -> dict:
        return {
            "model_type": self.model_type,
            "total_users": self.n_users,
            "total_items": self.n_items,
        }


class Algorithm(ABC):
    """
    Named prediction algorithm.

    Class attributes:
        name: Registry key used in the engine document
        model_class: Model type produced by train()
        default_params: Parameter defaults merged under the configured params
    """

    name: ClassVar[str] = "base"
    model_class: ClassVar[type] = Model
    default_params: ClassVar[Dict[str, Any]] = {}

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        merged = dict(self.default_params)
        merged.update(params or {})
        self.params = MappingProxyType(merged)

    def train(self, data: PreparedData) -> Model:
        """
        Train a model on prepared data.

        Raises:
            TrainFailure: insufficient data, non-finite result or backend error
        """
        if data is None or len(data) == 0:
            raise TrainFailure("insufficient data: no ratings to train on")

        try:
            model = self._fit(data)
        except TrainFailure:
            raise
        except Exception as e:
            raise TrainFailure(f"{type(e).__name__}: {e}") from e

        if not model.is_finite():
            raise TrainFailure("model did not converge (non-finite values)")
        return model

    @abstractmethod
    def _fit(self, data: PreparedData) -> Model:
        """Produce a model from `data`. Must not modify `data`."""

    def predict(self, model: Model, query: Query) -> PredictionResult:
        """
        Rank items for `query.user`.

        Raises:
            PredictionFailure: the user is absent from the model's training data
        """
        if not isinstance(model, self.model_class):
            raise PredictionFailure(
                f"expected {self.model_class.__name__}, got {type(model).__name__}")

        user_idx = model.user_index.get(query.user)
        if user_idx is None:
            raise PredictionFailure(f"unknown user '{query.user}'")

        scores = model.user_scores(user_idx)
        return PredictionResult.from_pairs(rank_top_items(scores, model.item_ids, query.num))
