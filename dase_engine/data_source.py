"""
Data Source Module

Reads raw rating interactions and emits TrainingData:
- CSV / delimited text files
- Parquet files
- In-memory DataFrames (tests, notebooks)

Every source produces a table with `user`, `item` and `rating` columns.
Interpretation of the values is left to the preparator.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd

from .exceptions import DataUnavailable
from .utils import sha256_file

logger = logging.getLogger(__name__)

RATING_COLUMNS = ["user", "item", "rating"]


@dataclass
class TrainingData:
    """
    Raw ratings read by a DataSource.

    Attributes:
        ratings: DataFrame with columns user, item, rating
        snapshots: Provenance records ({uri, sha256}) of what was read
    """
    ratings: pd.DataFrame
    snapshots: List[Dict[str, str]] = field(default_factory=list)

    def __len__(self):
        return len(self.ratings)


class DataSource(ABC):
    """Reads training data from a configured source."""

    name = "base"

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        self.params = MappingProxyType(dict(params or {}))

    @abstractmethod
    def read_training(self) -> TrainingData:
        """Read the source. Raises DataUnavailable on unreachable or malformed input."""


class FileDataSource(DataSource):
    """
    Reads ratings from a CSV or parquet file.

    Params:
        path: File to read (required)
        format: 'csv' or 'parquet' (inferred from the file suffix if omitted)
        sep: Delimiter for csv files (default ',', e.g. '::' for MovieLens dumps)
        header: Whether the csv file has a header row (default True)
        columns: Optional mapping of file column names to user/item/rating
    """

    name = "file"

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        super().__init__(params)
        if not self.params.get("path"):
            raise ValueError("FileDataSource requires a 'path' parameter")

    @property
    def path(self) -> Path:
        return Path(self.params["path"])

    def _format(self) -> str:
        fmt = self.params.get("format")
        if fmt:
            return str(fmt).lower()
        return "parquet" if self.path.suffix.lower() in (".parquet", ".pq") else "csv"

    def read_training(self) -> TrainingData:
        path = self.path
        if not path.exists():
            raise DataUnavailable(f"Ratings file not found: {path}")

        fmt = self._format()
        logger.info(f"Reading {fmt} ratings from {path}")
        try:
            if fmt == "parquet":
                df = pd.read_parquet(path)
            elif fmt == "csv":
                df = self._read_csv(path)
            else:
                raise DataUnavailable(f"Unsupported data format: {fmt}")
        except DataUnavailable:
            raise
        except (OSError, ValueError, pd.errors.ParserError) as e:
            raise DataUnavailable(f"Failed to read {path}: {e}") from e

        columns = self.params.get("columns")
        if columns:
            df = df.rename(columns=dict(columns))

        missing = [c for c in RATING_COLUMNS if c not in df.columns]
        if missing:
            raise DataUnavailable(f"{path} is missing columns: {', '.join(missing)}")

        logger.info(f"  Loaded {len(df)} ratings")
        return TrainingData(
            ratings=df[RATING_COLUMNS].copy(),
            snapshots=[{"uri": str(path), "sha256": sha256_file(path)}],
        )

    def _read_csv(self, path: Path) -> pd.DataFrame:
        sep = self.params.get("sep", ",")
        header = self.params.get("header", True)
        kwargs = {"sep": sep}
        if len(sep) > 1:
            # pandas only supports multi-character separators with the python engine
            kwargs["engine"] = "python"
        if not header:
            kwargs["header"] = None
            kwargs["names"] = RATING_COLUMNS
        return pd.read_csv(path, **kwargs)


class FrameDataSource(DataSource):
    """Serves an in-memory DataFrame (params: frame)."""

    name = "frame"

    def read_training(self) -> TrainingData:
        df = self.params.get("frame")
        if df is None:
            raise DataUnavailable("FrameDataSource has no 'frame' parameter")
        if not isinstance(df, pd.DataFrame):
            raise DataUnavailable(f"frame must be a DataFrame, got {type(df).__name__}")

        missing = [c for c in RATING_COLUMNS if c not in df.columns]
        if missing:
            raise DataUnavailable(f"frame is missing columns: {', '.join(missing)}")

        return TrainingData(
            ratings=df[RATING_COLUMNS].copy(),
            snapshots=[{"uri": "memory://frame", "sha256": "sha256:unknown"}],
        )
