"""
Model Serialization Module

Saves and loads trained models with an explicit, versioned schema:
- Arrays (factors, biases, id lists) go to a `.npz` file, loaded without pickle
- Scalars and the model type go to a JSON-able meta dict kept by the caller
"""

import logging
import os
import zipfile
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np

from .algorithms import MODEL_CLASSES, Model
from .exceptions import ModelStoreError
from .utils import sha256_file

logger = logging.getLogger(__name__)

MODEL_SCHEMA_VERSION = 1

PathLike = Union[str, Path]


def save_model(model: Model, path: PathLike) -> Dict[str, Any]:
    """
    Save a trained model's arrays to `path` (.npz).

    Args:
        model: Trained model (ALSModel, SVDModel, ...)
        path: File path to write

    Returns:
        Meta dict needed by load_model(): schema_version, model_type,
        scalar params, array names and the file hash

    Example:
        >>> meta = save_model(trained_model, "store/instances/000001/models/als.npz")
    """
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    params, arrays = model.to_state()
    with open(output_path, 'wb') as f:
        np.savez(f, **arrays)

    logger.debug(f"Model saved to: {output_path}")
    return {
        "schema_version": MODEL_SCHEMA_VERSION,
        "model_type": model.model_type,
        "params": params,
        "arrays": sorted(arrays.keys()),
        "sha256": sha256_file(output_path),
    }


def load_model(meta: Dict[str, Any], path: PathLike) -> Model:
    """
    Load a model saved by save_model().

    Raises:
        FileNotFoundError: If the model file doesn't exist
        ModelStoreError: Unknown schema version or model type, or missing arrays
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model file not found: {path}")

    version = meta.get("schema_version")
    if version != MODEL_SCHEMA_VERSION:
        raise ModelStoreError(f"Unsupported model schema version {version} in {path}")

    model_class = MODEL_CLASSES.get(meta.get("model_type"))
    if model_class is None:
        raise ModelStoreError(f"Unknown model type '{meta.get('model_type')}' in {path}")

    with np.load(path, allow_pickle=False) as npz:
        missing = set(meta.get("arrays", [])) - set(npz.files)
        if missing:
            raise ModelStoreError(f"{path} is missing arrays: {', '.join(sorted(missing))}")
        arrays = {name: npz[name] for name in npz.files}

    logger.debug(f"Model loaded from: {path}")
    return model_class.from_state(meta.get("params", {}), arrays)


def get_model_size(path: PathLike) -> float:
    """
    Get size of saved model file in megabytes.

    Raises:
        FileNotFoundError: If the model file doesn't exist
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model file not found: {path}")

    size_bytes = os.path.getsize(path)
    return size_bytes / (1024 ** 2)


def verify_model_integrity(meta: Dict[str, Any], path: PathLike) -> bool:
    """
    Verify that a saved model matches its recorded hash and loads successfully.

    Returns:
        True if the model loads, False otherwise
    """
    expected = meta.get("sha256")
    if expected and sha256_file(path) != expected:
        logger.warning(f"Model integrity check failed: hash mismatch for {path}")
        return False
    try:
        load_model(meta, path)
        return True
    except (OSError, ValueError, KeyError, TypeError, zipfile.BadZipFile, ModelStoreError) as e:
        logger.warning(f"Model integrity check failed: {e}")
        return False
