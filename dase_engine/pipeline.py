"""
Training Pipeline Orchestrator

Runs one train run end to end and records it as an engine instance:
1. Data loading (DataSource)
2. Preparation (Preparator)
3. Parallel training of every named algorithm
4. Model persistence and provenance metadata

Deploying the resulting instance is a separate, explicit step
(ModelStore.set_current), so a running server keeps answering from the
current instance while a new one trains.
"""

import logging
import time
from typing import Optional

import psutil

from . import config
from .engine import Engine
from .model_store import EngineInstance, ModelStore
from .train import train_algorithms
from .utils import git_commit_short

logger = logging.getLogger(__name__)


def log_memory_usage(stage: str) -> float:
    """
    Log current memory usage

    Args:
        stage: Description of current stage (e.g., "Before training")

    Returns:
        float: Memory usage in MB
    """
    process = psutil.Process()
    memory_mb = process.memory_info().rss / 1024 / 1024
    logger.info(f"[Memory] {stage}: {memory_mb:.2f} MB")
    return memory_mb


def start_instance(engine: Engine, store: ModelStore) -> EngineInstance:
    """Register a new training instance for `engine` and return it."""
    return store.create_instance(
        engine_id=engine.engine_id,
        algorithms=engine.algorithm_names,
        params=dict(engine.params),
        metadata={"training_commit": git_commit_short()},
    )


def run_training_pipeline(engine: Engine,
                          store: ModelStore,
                          instance: Optional[EngineInstance] = None,
                          max_workers: Optional[int] = None) -> EngineInstance:
    """
    Run the complete training pipeline from data to a trained instance.

    Args:
        engine: Wired engine (data source, preparator, algorithms, serving)
        store: Model store receiving the instance
        instance: Instance created beforehand with start_instance()
            (a new one is created if None)
        max_workers: Parallel trainings (uses config default if None)

    Returns:
        The instance in status trained

    Raises:
        DataUnavailable, InvalidTrainingData, TrainFailure, ModelStoreError:
            the instance is marked failed before the error propagates

    Example:
        >>> instance = run_training_pipeline(engine, FileModelStore("store"))
        >>> store.set_current(instance.instance_id)
    """
    start_time = time.time()

    if instance is None:
        instance = start_instance(engine, store)
    if max_workers is None:
        max_workers = config.TRAINING_CONFIG.get("max_workers")
    instance_id = instance.instance_id

    logger.info("=" * 60)
    logger.info(f"STARTING TRAINING RUN: engine '{engine.engine_id}', instance {instance_id}")
    logger.info("=" * 60)

    try:
        if config.TRAINING_CONFIG.get("record_memory"):
            log_memory_usage("Before training")

        # Step 1: Load training data
        logger.info(f"[1/4] Reading training data ({type(engine.data_source).__name__})...")
        training_data = engine.data_source.read_training()
        logger.info(f"  Read {len(training_data)} ratings")

        # Step 2: Prepare
        logger.info(f"[2/4] Preparing data ({type(engine.preparator).__name__})...")
        prepared = engine.preparator.prepare(training_data)
        logger.info(f"  Prepared {len(prepared)} ratings: "
                    f"{prepared.n_users} users, {prepared.n_items} items")

        # Step 3: Train all algorithms in parallel
        logger.info(f"[3/4] Training {len(engine.algorithms)} algorithm(s)...")
        models = train_algorithms(prepared, engine.algorithms, max_workers=max_workers)

        peak_memory = None
        if config.TRAINING_CONFIG.get("record_memory"):
            peak_memory = log_memory_usage("After training")

        # Step 4: Persist
        logger.info(f"[4/4] Persisting models for instance {instance_id}...")
        training_time_sec = time.time() - start_time
        trained = store.persist(instance_id, models, metadata={
            "training_time_sec": round(training_time_sec, 3),
            "training_data_snapshots": training_data.snapshots,
            "n_ratings": len(prepared),
            "n_users": prepared.n_users,
            "n_items": prepared.n_items,
            "peak_memory_mb": peak_memory,
            "model_info": {name: model.get_model_info() for name, model in models.items()},
        })
    except Exception as e:
        logger.error(f"Training run for instance {instance_id} failed: {e}")
        logger.error("TRAINING RUN FAILED")
        store.mark_failed(instance_id, f"{type(e).__name__}: {e}")
        raise

    logger.info("=" * 60)
    logger.info("TRAINING RUN COMPLETED SUCCESSFULLY")
    logger.info("=" * 60)
    logger.info(f"Instance ID: {instance_id}")
    logger.info(f"Total time: {training_time_sec:.2f} seconds")
    logger.info("=" * 60)
    return trained
