"""
Engine Factory

Wires a DataSource, a Preparator, the named Algorithm instances and a Serving
policy into one Engine from an already-parsed engine document. Implementations
are looked up in registries filled at import time.

Engine document:
    {
      "id": "default",
      "datasource": {"name": "file", "params": {"path": "data/ratings.csv"}},
      "preparator": {"name": "identity", "params": {}},
      "algorithms": [{"name": "als", "params": {"rank": 10}},
                     {"name": "als_wide", "type": "als", "params": {"rank": 50}}],
      "serving": {"name": "first", "params": {}}
    }

Each algorithm entry's `name` identifies the instance and must be unique;
`type` selects the implementation and defaults to `name`.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple, Type, Union

from .algorithms import ALGORITHMS, Algorithm
from .data_source import DataSource, FileDataSource, FrameDataSource
from .preparator import FilteringPreparator, IdentityPreparator, Preparator
from .serving import SERVINGS, Serving

logger = logging.getLogger(__name__)

DATA_SOURCES: Dict[str, Type[DataSource]] = {
    FileDataSource.name: FileDataSource,
    FrameDataSource.name: FrameDataSource,
}

PREPARATORS: Dict[str, Type[Preparator]] = {
    IdentityPreparator.name: IdentityPreparator,
    FilteringPreparator.name: FilteringPreparator,
}


@dataclass(frozen=True)
class Engine:
    """
    One runnable pipeline. Algorithms keep their registration order, which
    is also the order their results reach Serving.
    """
    engine_id: str
    data_source: DataSource
    preparator: Preparator
    algorithms: Mapping[str, Algorithm]
    serving: Serving
    params: Mapping[str, Any] = field(default_factory=dict)

    @property
    def algorithm_names(self) -> List[str]:
        return list(self.algorithms.keys())


def _component(section: Any, default_name: str, what: str) -> Tuple[str, Dict[str, Any]]:
    if section is None:
        return default_name, {}
    if not isinstance(section, Mapping):
        raise ValueError(f"'{what}' must be an object, got {type(section).__name__}")
    params = section.get("params", {}) or {}
    if not isinstance(params, Mapping):
        raise ValueError(f"'{what}.params' must be an object")
    return section.get("name", default_name), dict(params)


def _lookup(registry: Mapping[str, type], name: str, what: str) -> type:
    try:
        return registry[name]
    except KeyError:
        raise ValueError(
            f"Unknown {what} '{name}'. Available: {', '.join(sorted(registry))}"
        ) from None


class EngineFactory:
    """Builds Engines from engine documents using the module registries."""

    def __init__(self,
                 data_sources: Mapping[str, Type[DataSource]] = None,
                 preparators: Mapping[str, Type[Preparator]] = None,
                 algorithms: Mapping[str, Type[Algorithm]] = None,
                 servings: Mapping[str, Type[Serving]] = None):
        self.data_sources = dict(data_sources or DATA_SOURCES)
        self.preparators = dict(preparators or PREPARATORS)
        self.algorithms = dict(algorithms or ALGORITHMS)
        self.servings = dict(servings or SERVINGS)

    def register_algorithm(self, name: str, algorithm_class: Type[Algorithm]) -> None:
        """Add a plugin algorithm. Call at process start, before build()."""
        if name in self.algorithms:
            raise ValueError(f"Algorithm '{name}' is already registered")
        self.algorithms[name] = algorithm_class

    def build(self, engine_config: Mapping[str, Any]) -> Engine:
        """
        Build an Engine from a parsed engine document.

        Raises:
            ValueError: unknown component names, duplicate algorithm names,
                or a document without algorithms
        """
        if not isinstance(engine_config, Mapping):
            raise ValueError("Engine config must be an object")

        ds_name, ds_params = _component(engine_config.get("datasource"), "file", "datasource")
        prep_name, prep_params = _component(engine_config.get("preparator"), "identity", "preparator")
        serving_name, serving_params = _component(engine_config.get("serving"), "first", "serving")

        entries = engine_config.get("algorithms")
        if not entries:
            raise ValueError("Engine config must list at least one algorithm")

        algorithms: Dict[str, Algorithm] = {}
        for entry in entries:
            name, params = _component(entry, None, "algorithms[]")
            if not name:
                raise ValueError("Every algorithm entry needs a 'name'")
            if name in algorithms:
                raise ValueError(f"Duplicate algorithm name '{name}'")
            algo_class = _lookup(self.algorithms, entry.get("type", name), "algorithm")
            algorithms[name] = algo_class(params)

        engine = Engine(
            engine_id=str(engine_config.get("id", "default")),
            data_source=_lookup(self.data_sources, ds_name, "datasource")(ds_params),
            preparator=_lookup(self.preparators, prep_name, "preparator")(prep_params),
            algorithms=MappingProxyType(algorithms),
            serving=_lookup(self.servings, serving_name, "serving")(serving_params),
            params=MappingProxyType(_snapshot_params(engine_config)),
        )
        logger.info(f"Built engine '{engine.engine_id}' with algorithms: "
                    f"{', '.join(engine.algorithm_names)}")
        return engine


def _snapshot_params(engine_config: Mapping[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of the document for instance provenance."""
    snapshot = {}
    for key, value in engine_config.items():
        try:
            json.dumps(value)
            snapshot[key] = copy.deepcopy(value)
        except TypeError:
            snapshot[key] = repr(value)
    return snapshot


def load_engine_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read an engine document from a JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file isn't a JSON object
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Engine config not found: {path}")
    with open(path) as f:
        try:
            config = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Engine config {path} is not valid JSON: {e}") from e
    if not isinstance(config, dict):
        raise ValueError(f"Engine config {path} must contain a JSON object")

    # Relative data paths resolve against the document's directory
    ds = config.get("datasource") or {}
    ds_path = (ds.get("params") or {}).get("path")
    if ds_path and not Path(ds_path).is_absolute():
        ds["params"]["path"] = str((path.parent / ds_path).resolve())
    return config
