"""
Configuration file for the DASE engine

Contains paths, runtime settings and defaults used across the engine.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ============================================================================
# PATHS
# ============================================================================

PROJECT_ROOT = Path(__file__).parent.parent

# Root of the model store (instances/ and current.json live here)
STORE_DIR = Path(os.getenv("DASE_STORE_DIR", str(PROJECT_ROOT / "store")))

# Engine document binding datasource, preparator, algorithms and serving
ENGINE_CONFIG_PATH = Path(os.getenv("ENGINE_JSON", str(PROJECT_ROOT / "engine.json")))

# ============================================================================
# TRAINING CONFIGURATION
# ============================================================================

TRAINING_CONFIG = {
    "max_workers": int(os.getenv("TRAIN_MAX_WORKERS", "4")),  # Parallel algorithm trainings
    "record_memory": True,  # Log process memory before/after training
}

# ============================================================================
# ALGORITHM DEFAULTS
# ============================================================================

ALS_CONFIG = {
    "rank": 10,  # Number of latent factors
    "num_iterations": 20,
    "lambda": 0.01,  # Regularization parameter
    "seed": 3,
}

SVD_CONFIG = {
    "n_factors": 100,  # Number of latent factors
    "regularization": 0.01,
}

ITEM_SIMILARITY_CONFIG = {
    "min_similarity": 0.0,  # Ignore neighbours below this cosine similarity
}

# ============================================================================
# DATA PREPARATION
# ============================================================================

PREPROCESSING_CONFIG = {
    "min_rating": None,  # Minimum valid rating (None disables the check)
    "max_rating": None,
    "min_user_interactions": 0,
    "min_item_interactions": 0,
}

# ============================================================================
# SERVING CONFIGURATION
# ============================================================================

SERVING_CONFIG = {
    "host": os.getenv("DASE_HOST", "0.0.0.0"),
    "port": int(os.getenv("PORT", "8000")),
    "debug": False,
    "timeout_ms": int(os.getenv("QUERY_TIMEOUT_MS", "600")),  # Per-query deadline
    "max_workers": int(os.getenv("QUERY_MAX_WORKERS", "8")),  # In-flight predicts per algorithm
    "poll_interval_sec": float(os.getenv("RELOAD_POLL_SEC", "0")),  # 0 disables polling
    "max_num": 100,  # Largest accepted `num` in a query
}
