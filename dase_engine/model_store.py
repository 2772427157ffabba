"""
Model Store

Persistence for engine instances (one per train run) and the "current"
pointer used by the serving runtime.

DESIGN RULES:
- Instance ids are assigned under the store lock, strictly increasing
- Status only moves forward: training -> trained -> deployed, or -> failed
- persist() stores every named model or none; an instance is only readable
  as trained once all of its models are in place
- set_current() swaps the pointer in one atomic write
"""

import json
import logging
import os
import re
import shutil
import threading
import uuid
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .algorithms import Model
from .exceptions import DeployInconsistency, ModelStoreError
from .serialize import get_model_size, load_model, save_model, verify_model_integrity
from .utils import atomic_write_json

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")


class InstanceStatus(str, Enum):
    TRAINING = "training"
    TRAINED = "trained"
    DEPLOYED = "deployed"
    FAILED = "failed"


_TRANSITIONS = {
    InstanceStatus.TRAINING: {InstanceStatus.TRAINED, InstanceStatus.FAILED},
    InstanceStatus.TRAINED: {InstanceStatus.DEPLOYED},
    InstanceStatus.DEPLOYED: set(),
    InstanceStatus.FAILED: set(),
}

DEPLOYABLE = {InstanceStatus.TRAINED, InstanceStatus.DEPLOYED}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True)
class EngineInstance:
    """
    Record of one train run.

    Attributes:
        instance_id: Unique, monotonically assigned id
        engine_id: Id of the engine document it was trained from
        status: training | trained | deployed | failed; "deployed" means the
            instance has been made current at least once, and stays so after
            a later deploy. The current pointer alone names the served instance
        algorithms: Algorithm names in registration order
        created_at / updated_at: UTC timestamps (ISO 8601)
        params: Engine document snapshot
        models: Per-algorithm model meta (empty until trained)
        metadata: Provenance and run details (timings, failure reason, ...)
    """
    instance_id: int
    engine_id: str
    status: InstanceStatus
    algorithms: Tuple[str, ...]
    created_at: str
    updated_at: str
    params: Dict[str, Any] = field(default_factory=dict)
    models: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def deployable(self) -> bool:
        return self.status in DEPLOYABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "engine_id": self.engine_id,
            "status": self.status.value,
            "algorithms": list(self.algorithms),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "params": self.params,
            "models": self.models,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineInstance":
        return cls(
            instance_id=int(data["instance_id"]),
            engine_id=data.get("engine_id", "default"),
            status=InstanceStatus(data["status"]),
            algorithms=tuple(data.get("algorithms", [])),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            params=data.get("params", {}),
            models=data.get("models", {}),
            metadata=data.get("metadata", {}),
        )


class ModelStore(ABC):
    """
    Lifecycle operations shared by every backend.

    Backends implement the storage primitives (_allocate, _write_record,
    _read_record, _write_models, _read_models, _write_current, _read_current).
    """

    def __init__(self):
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_instance(self, engine_id: str, algorithms: Sequence[str],
                        params: Optional[Mapping[str, Any]] = None,
                        metadata: Optional[Mapping[str, Any]] = None) -> EngineInstance:
        """Allocate the next instance id and record it as training."""
        if not algorithms:
            raise ValueError("An instance needs at least one algorithm")
        for name in algorithms:
            if not _SAFE_NAME.match(name):
                raise ValueError(f"Algorithm name '{name}' is not a safe identifier")

        with self._lock:
            instance_id = self._allocate()
            now = _now()
            instance = EngineInstance(
                instance_id=instance_id,
                engine_id=engine_id,
                status=InstanceStatus.TRAINING,
                algorithms=tuple(algorithms),
                created_at=now,
                updated_at=now,
                params=dict(params or {}),
                metadata=dict(metadata or {}),
            )
            self._write_record(instance)
        logger.info(f"Created instance {instance_id} for engine '{engine_id}'")
        return instance

    def persist(self, instance_id: int, models: Mapping[str, Model],
                metadata: Optional[Mapping[str, Any]] = None) -> EngineInstance:
        """
        Store every model of a training instance and mark it trained.

        Raises:
            ModelStoreError: the instance is not training, the model names
                don't match its algorithms, or writing failed (nothing of this
                call remains visible and the instance stays training)
        """
        instance = self.get_instance(instance_id)
        if instance.status != InstanceStatus.TRAINING:
            raise ModelStoreError(
                f"Instance {instance_id} is {instance.status.value}, expected training")
        if set(models) != set(instance.algorithms):
            raise ModelStoreError(
                f"Instance {instance_id} expects models for {sorted(instance.algorithms)}, "
                f"got {sorted(models)}")

        ordered = [(name, models[name]) for name in instance.algorithms]
        model_meta = self._write_models(instance_id, ordered)

        with self._lock:
            instance = self.get_instance(instance_id)
            merged = dict(instance.metadata)
            merged.update(metadata or {})
            updated = self._transition(instance, InstanceStatus.TRAINED,
                                       models=model_meta, metadata=merged)
        logger.info(f"Persisted {len(ordered)} model(s) for instance {instance_id}")
        return updated

    def mark_failed(self, instance_id: int, reason: str) -> EngineInstance:
        with self._lock:
            instance = self.get_instance(instance_id)
            merged = dict(instance.metadata)
            merged["failure_reason"] = reason
            updated = self._transition(instance, InstanceStatus.FAILED, metadata=merged)
        logger.error(f"Instance {instance_id} marked failed: {reason}")
        return updated

    def set_current(self, instance_id: int) -> EngineInstance:
        """
        Point "current" at a trained (or previously deployed) instance.

        Raises:
            DeployInconsistency: the instance is unknown or not deployable;
                the pointer is left unchanged
        """
        with self._lock:
            try:
                instance = self.get_instance(instance_id)
            except ModelStoreError as e:
                raise DeployInconsistency(f"Cannot deploy instance {instance_id}: {e}") from e
            if not instance.deployable:
                raise DeployInconsistency(
                    f"Cannot deploy instance {instance_id}: status is {instance.status.value}")

            self._write_current(instance_id)
            if instance.status == InstanceStatus.TRAINED:
                merged = dict(instance.metadata)
                merged["deployed_at"] = _now()
                instance = self._transition(instance, InstanceStatus.DEPLOYED, metadata=merged)
        logger.info(f"Current instance -> {instance_id}")
        return instance

    def get_current(self) -> Optional[int]:
        return self._read_current()

    def get_instance(self, instance_id: int) -> EngineInstance:
        """Raises ModelStoreError if the instance doesn't exist."""
        return self._read_record(int(instance_id))

    def list_instances(self) -> List[EngineInstance]:
        return [self._read_record(i) for i in sorted(self._list_ids())]

    def latest_trained(self) -> Optional[EngineInstance]:
        """Most recent instance that reached trained (or deployed)."""
        for instance in reversed(self.list_instances()):
            if instance.deployable:
                return instance
        return None

    def load_models(self, instance_id: int) -> Dict[str, Model]:
        """
        Load every model of a deployable instance, in algorithm order.

        Raises:
            DeployInconsistency: the instance is not trained/deployed
        """
        instance = self.get_instance(instance_id)
        if not instance.deployable:
            raise DeployInconsistency(
                f"Instance {instance_id} is {instance.status.value} and has no usable models")
        return self._read_models(instance)

    def _transition(self, instance: EngineInstance, status: InstanceStatus,
                    **changes) -> EngineInstance:
        if status not in _TRANSITIONS[instance.status]:
            raise ModelStoreError(
                f"Instance {instance.instance_id} cannot move from "
                f"{instance.status.value} to {status.value}")
        updated = replace(instance, status=status, updated_at=_now(), **changes)
        self._write_record(updated)
        return updated

    # ------------------------------------------------------------------
    # Storage primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def _allocate(self) -> int:
        """Reserve and return the next instance id (called under the lock)."""

    @abstractmethod
    def _list_ids(self) -> List[int]:
        pass

    @abstractmethod
    def _write_record(self, instance: EngineInstance) -> None:
        pass

    @abstractmethod
    def _read_record(self, instance_id: int) -> EngineInstance:
        pass

    @abstractmethod
    def _write_models(self, instance_id: int,
                      models: List[Tuple[str, Model]]) -> Dict[str, Dict[str, Any]]:
        """Store all models or none. Returns per-name model meta."""

    @abstractmethod
    def _read_models(self, instance: EngineInstance) -> Dict[str, Model]:
        pass

    @abstractmethod
    def _write_current(self, instance_id: int) -> None:
        pass

    @abstractmethod
    def _read_current(self) -> Optional[int]:
        pass


class FileModelStore(ModelStore):
    """
    Directory-backed store.

    Layout:
        <root>/current.json
        <root>/instances/000001/instance.json
        <root>/instances/000001/models/<algorithm>.npz
    """

    def __init__(self, root: Union[str, Path]):
        super().__init__()
        self.root = Path(root)
        self.instances_dir = self.root / "instances"
        self.instances_dir.mkdir(parents=True, exist_ok=True)
        self.current_path = self.root / "current.json"

    def _instance_dir(self, instance_id: int) -> Path:
        return self.instances_dir / f"{instance_id:06d}"

    def _list_ids(self) -> List[int]:
        ids = []
        for p in self.instances_dir.iterdir():
            if p.is_dir() and p.name.isdigit() and (p / "instance.json").exists():
                ids.append(int(p.name))
        return ids

    def _allocate(self) -> int:
        existing = [int(p.name) for p in self.instances_dir.iterdir() if p.name.isdigit()]
        candidate = max(existing, default=0) + 1
        # mkdir is atomic, so two processes sharing the store can't get the same id
        while True:
            try:
                self._instance_dir(candidate).mkdir()
                return candidate
            except FileExistsError:
                candidate += 1

    def _write_record(self, instance: EngineInstance) -> None:
        atomic_write_json(self._instance_dir(instance.instance_id) / "instance.json",
                          instance.to_dict())

    def _read_record(self, instance_id: int) -> EngineInstance:
        path = self._instance_dir(instance_id) / "instance.json"
        if not path.exists():
            raise ModelStoreError(f"Instance {instance_id} not found")
        try:
            with open(path) as f:
                return EngineInstance.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise ModelStoreError(f"Instance record {path} is unreadable: {e}") from e

    def _write_models(self, instance_id: int,
                      models: List[Tuple[str, Model]]) -> Dict[str, Dict[str, Any]]:
        instance_dir = self._instance_dir(instance_id)
        final_dir = instance_dir / "models"
        tmp_dir = instance_dir / f".models-{uuid.uuid4().hex}"
        tmp_dir.mkdir(parents=True)

        try:
            model_meta = {}
            for name, model in models:
                path = tmp_dir / f"{name}.npz"
                meta = save_model(model, path)
                if not verify_model_integrity(meta, path):
                    raise ModelStoreError(f"Model '{name}' failed its integrity check after writing")
                meta["size_mb"] = get_model_size(path)
                model_meta[name] = meta
            if final_dir.exists():
                # Leftover of an earlier interrupted run of this instance
                shutil.rmtree(final_dir)
            os.replace(tmp_dir, final_dir)
        except Exception as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise ModelStoreError(f"Failed to persist models for instance {instance_id}: {e}") from e
        return model_meta

    def _read_models(self, instance: EngineInstance) -> Dict[str, Model]:
        models_dir = self._instance_dir(instance.instance_id) / "models"
        loaded = {}
        for name in instance.algorithms:
            meta = instance.models.get(name)
            if meta is None:
                raise ModelStoreError(f"Instance {instance.instance_id} has no model meta for '{name}'")
            try:
                loaded[name] = load_model(meta, models_dir / f"{name}.npz")
            except (OSError, ValueError, zipfile.BadZipFile) as e:
                raise ModelStoreError(
                    f"Failed to load model '{name}' of instance {instance.instance_id}: {e}") from e
        return loaded

    def _write_current(self, instance_id: int) -> None:
        atomic_write_json(self.current_path, {"instance_id": instance_id, "updated_at": _now()})

    def _read_current(self) -> Optional[int]:
        if not self.current_path.exists():
            return None
        try:
            with open(self.current_path) as f:
                return int(json.load(f)["instance_id"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ModelStoreError(f"Current pointer {self.current_path} is unreadable: {e}") from e


class InMemoryModelStore(ModelStore):
    """
    In-memory model store for testing.
    """

    def __init__(self):
        super().__init__()
        self._records: Dict[int, EngineInstance] = {}
        self._models: Dict[int, Dict[str, Model]] = {}
        self._current: Optional[int] = None
        self._last_id = 0

    def _allocate(self) -> int:
        self._last_id += 1
        return self._last_id

    def _list_ids(self) -> List[int]:
        return list(self._records.keys())

    def _write_record(self, instance: EngineInstance) -> None:
        self._records[instance.instance_id] = instance

    def _read_record(self, instance_id: int) -> EngineInstance:
        try:
            return self._records[instance_id]
        except KeyError:
            raise ModelStoreError(f"Instance {instance_id} not found") from None

    def _write_models(self, instance_id: int,
                      models: List[Tuple[str, Model]]) -> Dict[str, Dict[str, Any]]:
        stored = {}
        model_meta = {}
        for name, model in models:
            stored[name] = model
            model_meta[name] = {"model_type": model.model_type}
        # Single assignment: readers see all models or none
        self._models[instance_id] = stored
        return model_meta

    def _read_models(self, instance: EngineInstance) -> Dict[str, Model]:
        stored = self._models.get(instance.instance_id)
        if stored is None:
            raise ModelStoreError(f"Instance {instance.instance_id} has no stored models")
        return {name: stored[name] for name in instance.algorithms}

    def _write_current(self, instance_id: int) -> None:
        self._current = instance_id

    def _read_current(self) -> Optional[int]:
        return self._current
