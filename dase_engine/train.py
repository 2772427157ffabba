"""
Model Training Module

Fans algorithm training out over a thread pool and joins the results.

All algorithms read the same PreparedData, which nobody writes, so the
trainings need no locking. The join returns as soon as every algorithm
finished or one failed; after a failure the remaining trainings are left to
finish on their own and their models are discarded.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Mapping, Optional

from .algorithms import Algorithm, Model
from .exceptions import TrainFailure
from .preparator import PreparedData

logger = logging.getLogger(__name__)


def _train_one(name: str, algorithm: Algorithm, data: PreparedData) -> Model:
    start_time = time.time()
    logger.info(f"  Training '{name}' ({type(algorithm).__name__}) with params {dict(algorithm.params)}")
    model = algorithm.train(data)
    logger.info(f"  ✅ '{name}' trained in {time.time() - start_time:.2f}s")
    return model


def train_algorithms(data: PreparedData,
                     algorithms: Mapping[str, Algorithm],
                     max_workers: Optional[int] = None) -> Dict[str, Model]:
    """
    Train every named algorithm on `data` in parallel.

    Args:
        data: Prepared data shared by all algorithms
        algorithms: Algorithm instances by name, in registration order
        max_workers: Thread pool size (defaults to one thread per algorithm)

    Returns:
        Dict of algorithm name -> Model, in registration order

    Raises:
        TrainFailure: the first algorithm failure, tagged with its name
    """
    if not algorithms:
        raise TrainFailure("no algorithms to train")

    workers = min(max_workers or len(algorithms), len(algorithms))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="train")
    try:
        futures = {
            executor.submit(_train_one, name, algorithm, data): name
            for name, algorithm in algorithms.items()
        }
        models = {}
        for future in as_completed(futures):
            name = futures[future]
            try:
                models[name] = future.result()
            except TrainFailure as e:
                logger.error(f"  ✗ '{name}' failed: {e.cause}")
                raise TrainFailure(e.cause, algorithm=name) from e
            except Exception as e:
                logger.error(f"  ✗ '{name}' failed: {e}", exc_info=True)
                raise TrainFailure(f"{type(e).__name__}: {e}", algorithm=name) from e
    finally:
        # Don't wait on siblings after a failure; queued trainings are dropped
        executor.shutdown(wait=False, cancel_futures=True)

    return {name: models[name] for name in algorithms}
