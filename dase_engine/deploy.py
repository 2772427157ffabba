"""
Deploy / Query Runtime

Long-lived serving side of the engine. Loads the store's current instance
and answers queries against it, independently of any training run.

The loaded instance lives in one immutable DeployedEngine snapshot. Reload
builds a complete new snapshot and swaps it in with a single reference
assignment; a query reads the reference once, so it is answered entirely by
one instance even when a reload happens mid-flight.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .algorithms import Algorithm, Model
from .engine import Engine
from .exceptions import (
    DeployInconsistency,
    EngineError,
    EngineNotDeployed,
    PredictionFailure,
)
from .model_store import EngineInstance, ModelStore
from .prediction import PredictionResult, Query
from .serving import Serving

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeployedEngine:
    """Models of one instance paired with the algorithms that query them."""
    instance: EngineInstance
    models: Tuple[Tuple[str, Algorithm, Model], ...]
    serving: Serving
    loaded_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def instance_id(self) -> int:
        return self.instance.instance_id

    @property
    def algorithm_names(self) -> List[str]:
        return [name for name, _, _ in self.models]


def load_deployed_engine(engine: Engine, store: ModelStore, instance_id: int) -> DeployedEngine:
    """
    Load every model of `instance_id` and bind it to the engine's algorithms.

    Raises:
        DeployInconsistency: the instance isn't deployable, or it was trained
            with algorithms this engine doesn't define
    """
    instance = store.get_instance(instance_id)
    unknown = [name for name in instance.algorithms if name not in engine.algorithms]
    if unknown:
        raise DeployInconsistency(
            f"Instance {instance_id} uses algorithms unknown to engine "
            f"'{engine.engine_id}': {', '.join(unknown)}")

    models = store.load_models(instance_id)
    bound = tuple((name, engine.algorithms[name], models[name]) for name in instance.algorithms)
    return DeployedEngine(instance=instance, models=bound, serving=engine.serving)


class EngineServer:
    """
    Answers queries against the current engine instance.

    Args:
        engine: Wired engine providing algorithms and the serving policy
        store: Model store holding the current pointer
        timeout_ms: Per-query deadline for the predict fan-out
        max_workers: In-flight predicts allowed per algorithm; an algorithm
            with every slot busy is skipped for the query instead of queued
    """

    def __init__(self, engine: Engine, store: ModelStore,
                 timeout_ms: Optional[int] = None,
                 max_workers: Optional[int] = None):
        self.engine = engine
        self.store = store
        self.timeout_ms = timeout_ms if timeout_ms is not None else config.SERVING_CONFIG["timeout_ms"]
        self.max_workers = max_workers or config.SERVING_CONFIG["max_workers"]
        self._pools: Dict[str, Tuple[ThreadPoolExecutor, threading.BoundedSemaphore]] = {}
        self._pools_lock = threading.Lock()
        self._deployed: Optional[DeployedEngine] = None
        self._reload_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    @property
    def deployed(self) -> Optional[DeployedEngine]:
        return self._deployed

    @property
    def instance_id(self) -> Optional[int]:
        deployed = self._deployed
        return deployed.instance_id if deployed else None

    # ------------------------------------------------------------------
    # Reload
    # ------------------------------------------------------------------

    def reload(self) -> bool:
        """
        Load the store's current instance if it differs from the served one.

        Returns:
            True if a new instance was swapped in

        Raises:
            DeployInconsistency / ModelStoreError: the current instance could not
                be loaded; the previously served instance stays in place
        """
        with self._reload_lock:
            current = self.store.get_current()
            if current is None:
                logger.warning("No current instance in the model store")
                return False
            if self._deployed is not None and self._deployed.instance_id == current:
                return False

            deployed = load_deployed_engine(self.engine, self.store, current)
            previous = self.instance_id
            self._deployed = deployed
        logger.info(f"Serving instance {current} (previous: {previous}), "
                    f"algorithms: {', '.join(deployed.algorithm_names)}")
        return True

    def start_watcher(self, poll_interval_sec: float) -> None:
        """Poll the current pointer in a background thread and reload on change."""
        if self._watcher is not None:
            return
        self._stop_event.clear()

        def _watch():
            while not self._stop_event.wait(poll_interval_sec):
                try:
                    self.reload()
                except EngineError as e:
                    logger.error(f"Reload failed, keeping instance {self.instance_id}: {e}")

        self._watcher = threading.Thread(target=_watch, name="reload-watcher", daemon=True)
        self._watcher.start()
        logger.info(f"Reload watcher polling every {poll_interval_sec}s")

    def close(self) -> None:
        self._stop_event.set()
        if self._watcher is not None:
            self._watcher.join(timeout=5)
            self._watcher = None
        with self._pools_lock:
            pools = list(self._pools.values())
            self._pools = {}
        for executor, _ in pools:
            executor.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, query: Query) -> PredictionResult:
        """
        Answer one query.

        Raises:
            EngineNotDeployed: no instance has been loaded
            NoPredictionAvailable: every algorithm failed for this query
        """
        return self.answer(query)[1]

    def answer(self, query: Query) -> Tuple[int, PredictionResult]:
        """Like query(), also returning the id of the instance that answered."""
        deployed = self._deployed
        if deployed is None:
            raise EngineNotDeployed("No engine instance is deployed")

        results = self._predict_all(deployed, query)
        return deployed.instance_id, deployed.serving.serve(query, results)

    def _pool(self, name: str) -> Tuple[ThreadPoolExecutor, threading.BoundedSemaphore]:
        with self._pools_lock:
            pool = self._pools.get(name)
            if pool is None:
                pool = (
                    ThreadPoolExecutor(max_workers=self.max_workers,
                                       thread_name_prefix=f"predict-{name}"),
                    threading.BoundedSemaphore(self.max_workers),
                )
                self._pools[name] = pool
            return pool

    def _submit(self, name: str, algorithm: Algorithm, model: Model,
                query: Query) -> Optional[Future]:
        """Submit one predict to the algorithm's own pool; None if every slot is busy."""
        executor, slots = self._pool(name)
        if not slots.acquire(blocking=False):
            return None

        def _run():
            try:
                return algorithm.predict(model, query)
            finally:
                slots.release()

        try:
            future = executor.submit(_run)
        except RuntimeError:
            slots.release()
            raise
        # A cancelled predict never runs _run
        future.add_done_callback(lambda f: slots.release() if f.cancelled() else None)
        return future

    def _predict_all(self, deployed: DeployedEngine, query: Query) -> List[PredictionResult]:
        """Run every algorithm's predict concurrently; keep successes in registration order."""
        start_time = time.time()
        futures = [
            (name, self._submit(name, algorithm, model, query))
            for name, algorithm, model in deployed.models
        ]
        timeout = self.timeout_ms / 1000.0 if self.timeout_ms else None
        done, _ = wait([f for _, f in futures if f is not None], timeout=timeout)

        results = []
        for name, future in futures:
            if future is None:
                logger.warning(f"'{name}' has {self.max_workers} predicts still running, "
                               f"skipped for user '{query.user}'")
                continue
            if future not in done:
                future.cancel()
                logger.warning(f"'{name}' exceeded the {self.timeout_ms}ms deadline "
                               f"for user '{query.user}'")
                continue
            try:
                result = future.result()
            except PredictionFailure as e:
                logger.info(f"'{name}' could not answer user '{query.user}': {e.cause}")
                continue
            except Exception as e:
                logger.error(f"'{name}' raised while predicting for user '{query.user}': {e}",
                             exc_info=True)
                continue
            results.append(result.with_source(name))

        elapsed = time.time() - start_time
        if self.timeout_ms and elapsed > self.timeout_ms / 1000.0:
            logger.warning(f"SLOW_QUERY: {elapsed:.3f}s for user '{query.user}'")
        return results

    def status(self) -> Dict[str, Any]:
        deployed = self._deployed
        return {
            "engine_id": self.engine.engine_id,
            "instance_id": deployed.instance_id if deployed else None,
            "algorithms": deployed.algorithm_names if deployed else [],
            "trained_at": deployed.instance.updated_at if deployed else None,
            "loaded_at": deployed.loaded_at if deployed else None,
            "serving": type(self.engine.serving).__name__,
        }
