"""
Tests for dase_engine.serialize module
---------------------------------------
Covers:
- save_model()
- load_model()
- get_model_size()
- verify_model_integrity()
"""

import numpy as np
import pytest

from dase_engine import serialize
from dase_engine.algorithms import ALSAlgorithm, ItemSimilarityAlgorithm, SVDAlgorithm
from dase_engine.exceptions import ModelStoreError
from dase_engine.prediction import Query


@pytest.fixture
def als_model(prepared_data):
    return ALSAlgorithm({"rank": 2, "num_iterations": 5}).train(prepared_data)


# -------------------------------------------------------------------
# Tests for saving and loading models
# -------------------------------------------------------------------

class TestSaveLoadModel:
    """Tests for save_model(), load_model(), get_model_size()"""

    def test_save_model(self, tmp_path, als_model):
        """Saving a model writes an npz file and returns its meta."""
        model_path = tmp_path / "als.npz"
        meta = serialize.save_model(als_model, model_path)

        assert model_path.exists()
        assert meta["schema_version"] == serialize.MODEL_SCHEMA_VERSION
        assert meta["model_type"] == "als"
        assert meta["params"] == {"rank": 2}
        assert "user_factors" in meta["arrays"]
        assert meta["sha256"].startswith("sha256:")

    @pytest.mark.parametrize("algorithm", [
        ALSAlgorithm({"rank": 2, "num_iterations": 5}),
        SVDAlgorithm({"n_factors": 2}),
        ItemSimilarityAlgorithm(),
    ])
    def test_loaded_model_predicts_the_same(self, tmp_path, prepared_data, algorithm):
        """Saving and loading should preserve model behavior."""
        model = algorithm.train(prepared_data)
        meta = serialize.save_model(model, tmp_path / "model.npz")

        loaded = serialize.load_model(meta, tmp_path / "model.npz")

        assert type(loaded) is type(model)
        assert loaded.item_ids == model.item_ids
        for user in model.user_ids:
            query = Query(user=user, num=5)
            assert algorithm.predict(loaded, query) == algorithm.predict(model, query)

    def test_loaded_arrays_are_read_only(self, tmp_path, als_model):
        meta = serialize.save_model(als_model, tmp_path / "als.npz")
        loaded = serialize.load_model(meta, tmp_path / "als.npz")
        assert not loaded.user_factors.flags.writeable
        np.testing.assert_array_equal(loaded.user_factors, als_model.user_factors)

    def test_get_model_size(self, tmp_path, als_model):
        """File size should be a positive float in MB."""
        model_path = tmp_path / "size.npz"
        serialize.save_model(als_model, model_path)

        size = serialize.get_model_size(model_path)
        assert isinstance(size, float)
        assert size > 0.0

    def test_load_nonexistent_file(self, tmp_path, als_model):
        """Loading a nonexistent model should raise FileNotFoundError."""
        meta = serialize.save_model(als_model, tmp_path / "als.npz")
        with pytest.raises(FileNotFoundError):
            serialize.load_model(meta, tmp_path / "missing.npz")

    def test_unknown_schema_version(self, tmp_path, als_model):
        meta = serialize.save_model(als_model, tmp_path / "als.npz")
        meta["schema_version"] = 99
        with pytest.raises(ModelStoreError, match="schema version"):
            serialize.load_model(meta, tmp_path / "als.npz")

    def test_unknown_model_type(self, tmp_path, als_model):
        meta = serialize.save_model(als_model, tmp_path / "als.npz")
        meta["model_type"] = "neural"
        with pytest.raises(ModelStoreError, match="Unknown model type"):
            serialize.load_model(meta, tmp_path / "als.npz")

    def test_missing_array(self, tmp_path, als_model):
        meta = serialize.save_model(als_model, tmp_path / "als.npz")
        meta["arrays"] = meta["arrays"] + ["bias"]
        with pytest.raises(ModelStoreError, match="missing arrays"):
            serialize.load_model(meta, tmp_path / "als.npz")


# -------------------------------------------------------------------
# Tests for verify_model_integrity
# -------------------------------------------------------------------

class TestVerifyModelIntegrity:
    """Tests for verify_model_integrity()"""

    def test_valid_model(self, tmp_path, als_model):
        meta = serialize.save_model(als_model, tmp_path / "als.npz")
        assert serialize.verify_model_integrity(meta, tmp_path / "als.npz") is True

    def test_tampered_file(self, tmp_path, als_model):
        """A file whose hash changed is rejected."""
        path = tmp_path / "als.npz"
        meta = serialize.save_model(als_model, path)
        path.write_bytes(path.read_bytes() + b"garbage")
        assert serialize.verify_model_integrity(meta, path) is False

    def test_corrupted_file_without_hash(self, tmp_path, als_model):
        path = tmp_path / "als.npz"
        meta = serialize.save_model(als_model, path)
        meta.pop("sha256")
        path.write_text("not a zip archive")
        assert serialize.verify_model_integrity(meta, path) is False
