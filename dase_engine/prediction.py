"""
Query and prediction value types.

Both are immutable: a Query is created once per incoming request and a
PredictionResult is never modified after an algorithm returns it.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Optional, Tuple


@dataclass(frozen=True)
class Query:
    """
    Request for the top `num` items for `user`.

    User ids are normalized to strings so that `1` and `"1"` address the
    same user, matching how ratings tables are prepared.
    """

    user: str
    num: int = 10

    def __post_init__(self):
        if self.user is None or str(self.user).strip() == "":
            raise ValueError("user is required and cannot be empty")
        object.__setattr__(self, "user", str(self.user).strip())

        if isinstance(self.num, bool):
            raise ValueError(f"num must be a positive integer, got {self.num!r}")
        try:
            num = int(str(self.num).strip())
        except ValueError:
            raise ValueError(f"num must be a positive integer, got {self.num!r}") from None
        if num < 1:
            raise ValueError(f"num must be a positive integer (at least 1), got {num}")
        object.__setattr__(self, "num", num)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Query":
        if not isinstance(data, dict):
            raise ValueError(f"query must be a JSON object, got {type(data).__name__}")
        if "user" not in data:
            raise ValueError("query is missing required field: user")
        return cls(user=data["user"], num=data.get("num", 10))

    def to_dict(self) -> Dict[str, Any]:
        return {"user": self.user, "num": self.num}


@dataclass(frozen=True)
class ItemScore:
    item: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {"item": self.item, "score": self.score}


@dataclass(frozen=True)
class PredictionResult:
    """
    Ranked item scores from one algorithm (or from Serving).

    `source` names the algorithm that produced the result; the query runtime
    stamps it so serving policies can weight results by algorithm.
    """

    item_scores: Tuple[ItemScore, ...] = ()
    source: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "item_scores", tuple(self.item_scores))

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, float]],
                   source: Optional[str] = None) -> "PredictionResult":
        return cls(
            item_scores=tuple(ItemScore(str(item), float(score)) for item, score in pairs),
            source=source,
        )

    def with_source(self, source: str) -> "PredictionResult":
        return replace(self, source=source)

    @property
    def items(self) -> Tuple[str, ...]:
        return tuple(s.item for s in self.item_scores)

    def to_dict(self) -> Dict[str, Any]:
        return {"itemScores": [s.to_dict() for s in self.item_scores]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PredictionResult":
        return cls.from_pairs((d["item"], d["score"]) for d in data.get("itemScores", []))
