"""
Tests for dase_engine.deploy module
------------------------------------
Covers:
- EngineServer.reload() and the deployed snapshot
- Query fan-out with partial failures and the per-query deadline
- Hot swap without torn reads
- Background reload watcher
"""

import threading
import time

import pytest

from dase_engine.deploy import EngineServer, load_deployed_engine
from dase_engine.exceptions import (
    DeployInconsistency,
    EngineNotDeployed,
    ModelStoreError,
    NoPredictionAvailable,
    PredictionFailure,
)
from dase_engine.pipeline import run_training_pipeline
from dase_engine.prediction import Query

TWO_ALGORITHMS = [
    {"name": "als", "params": {"rank": 2, "num_iterations": 5, "seed": 3}},
    {"name": "svd", "params": {"n_factors": 2}},
]


@pytest.fixture
def engine(make_engine, ratings_df):
    return make_engine(ratings_df, algorithms=TWO_ALGORITHMS)


@pytest.fixture
def deployed_store(engine, memory_store):
    """Store with one trained and deployed instance."""
    instance = run_training_pipeline(engine, memory_store)
    memory_store.set_current(instance.instance_id)
    return memory_store


@pytest.fixture
def server(engine, deployed_store):
    with EngineServer(engine, deployed_store, timeout_ms=2000, max_workers=4) as srv:
        srv.reload()
        yield srv


# -------------------------------------------------------------------
# Reload
# -------------------------------------------------------------------

class TestReload:
    """Loading the current instance"""

    def test_query_before_reload(self, engine, deployed_store):
        with EngineServer(engine, deployed_store) as srv:
            with pytest.raises(EngineNotDeployed):
                srv.query(Query(user="1"))

    def test_reload_without_current(self, engine, memory_store):
        with EngineServer(engine, memory_store) as srv:
            assert srv.reload() is False
            assert srv.instance_id is None

    def test_reload_is_noop_when_unchanged(self, server):
        assert server.instance_id == 1
        assert server.reload() is False

    def test_reload_picks_up_new_instance(self, server, engine, deployed_store):
        second = run_training_pipeline(engine, deployed_store)
        assert server.reload() is False

        deployed_store.set_current(second.instance_id)
        assert server.reload() is True
        assert server.instance_id == second.instance_id

    def test_failed_reload_keeps_previous(self, server, engine, deployed_store, mocker):
        second = run_training_pipeline(engine, deployed_store)
        deployed_store.set_current(second.instance_id)
        mocker.patch.object(deployed_store, "load_models", side_effect=ModelStoreError("corrupt"))

        with pytest.raises(ModelStoreError):
            server.reload()
        assert server.instance_id == 1
        assert server.query(Query(user="1", num=2)).items

    def test_instance_with_unknown_algorithm(self, make_engine, ratings_df, deployed_store):
        other = make_engine(ratings_df, algorithms=[{"name": "item_similarity"}])
        with pytest.raises(DeployInconsistency, match="als, svd"):
            load_deployed_engine(other, deployed_store, 1)

    def test_status(self, server):
        status = server.status()
        assert status["instance_id"] == 1
        assert status["algorithms"] == ["als", "svd"]
        assert status["engine_id"] == "test"


# -------------------------------------------------------------------
# Query
# -------------------------------------------------------------------

class TestQuery:
    """Fan-out, partial failure and deadlines"""

    def test_first_result_served(self, server):
        result = server.query(Query(user="1", num=3))
        assert result.source == "als"
        assert len(result.item_scores) == 3

    def test_partial_failure_serves_remaining(self, server, engine, mocker):
        mocker.patch.object(engine.algorithms["als"], "predict",
                            side_effect=PredictionFailure("model unavailable"))

        result = server.query(Query(user="1", num=3))

        assert result.source == "svd"

    def test_unexpected_error_is_dropped(self, server, engine, mocker):
        mocker.patch.object(engine.algorithms["als"], "predict", side_effect=RuntimeError("bug"))
        assert server.query(Query(user="1")).source == "svd"

    def test_unknown_user(self, server):
        with pytest.raises(NoPredictionAvailable):
            server.query(Query(user="nobody"))

    def test_deadline_drops_slow_algorithm(self, engine, deployed_store, mocker):
        real_predict = engine.algorithms["als"].predict

        def slow_predict(model, query):
            time.sleep(0.5)
            return real_predict(model, query)

        mocker.patch.object(engine.algorithms["als"], "predict", side_effect=slow_predict)
        with EngineServer(engine, deployed_store, timeout_ms=100) as srv:
            srv.reload()
            start = time.time()
            result = srv.query(Query(user="1"))
            elapsed = time.time() - start

        assert result.source == "svd"
        assert elapsed < 0.45

    def test_all_algorithms_time_out(self, engine, deployed_store, mocker):
        def stuck(model, query):
            time.sleep(0.3)

        mocker.patch.object(engine.algorithms["als"], "predict", side_effect=stuck)
        mocker.patch.object(engine.algorithms["svd"], "predict", side_effect=stuck)
        with EngineServer(engine, deployed_store, timeout_ms=50) as srv:
            srv.reload()
            with pytest.raises(NoPredictionAvailable):
                srv.query(Query(user="1"))

    def test_hung_algorithm_does_not_starve_others(self, engine, deployed_store, mocker):
        """Predicts that outlive the deadline only use up their own algorithm's slots."""
        release = threading.Event()

        def hang(model, query):
            release.wait(5)
            raise PredictionFailure("released")

        mocker.patch.object(engine.algorithms["als"], "predict", side_effect=hang)
        with EngineServer(engine, deployed_store, timeout_ms=200, max_workers=2) as srv:
            srv.reload()
            try:
                sources = [srv.query(Query(user="1")).source for _ in range(4)]
            finally:
                release.set()

        assert sources == ["svd"] * 4

    def test_saturated_algorithm_skipped_without_waiting(self, engine, deployed_store, mocker):
        release = threading.Event()

        def hang(model, query):
            release.wait(5)
            raise PredictionFailure("released")

        mocker.patch.object(engine.algorithms["als"], "predict", side_effect=hang)
        with EngineServer(engine, deployed_store, timeout_ms=300, max_workers=1) as srv:
            srv.reload()
            try:
                srv.query(Query(user="1"))
                start = time.time()
                result = srv.query(Query(user="1"))
                elapsed = time.time() - start
            finally:
                release.set()

        assert result.source == "svd"
        assert elapsed < 0.25


# -------------------------------------------------------------------
# Hot swap
# -------------------------------------------------------------------

class TestHotSwap:
    """Replacing the deployed instance under load"""

    def test_no_torn_reads(self, make_engine, ratings_df, memory_store):
        """Every answer comes wholly from one instance while reloads race queries."""
        engine = make_engine(ratings_df, algorithms=TWO_ALGORITHMS,
                             serving={"name": "weighted_merge"})
        first = run_training_pipeline(engine, memory_store)
        other_engine = make_engine(ratings_df.assign(rating=6 - ratings_df["rating"]),
                                   algorithms=TWO_ALGORITHMS, serving={"name": "weighted_merge"})
        second = run_training_pipeline(other_engine, memory_store)

        query = Query(user="2", num=5)

        with EngineServer(engine, memory_store, timeout_ms=5000) as srv:
            memory_store.set_current(first.instance_id)
            srv.reload()
            answer_first = srv.query(query)
            memory_store.set_current(second.instance_id)
            srv.reload()
            answer_second = srv.query(query)
            assert answer_first != answer_second

            seen = []
            stop = threading.Event()

            def reader():
                while not stop.is_set():
                    seen.append(srv.query(query))

            readers = [threading.Thread(target=reader) for _ in range(3)]
            for t in readers:
                t.start()
            for i in range(20):
                memory_store.set_current(first.instance_id if i % 2 == 0 else second.instance_id)
                srv.reload()
            stop.set()
            for t in readers:
                t.join()

        assert seen
        assert all(answer in (answer_first, answer_second) for answer in seen)

    def test_watcher_reloads_on_pointer_change(self, server, engine, deployed_store):
        second = run_training_pipeline(engine, deployed_store)
        server.start_watcher(0.05)

        deployed_store.set_current(second.instance_id)
        deadline = time.time() + 5
        while server.instance_id != second.instance_id and time.time() < deadline:
            time.sleep(0.05)

        assert server.instance_id == second.instance_id
