"""
Engine Console

Control surface for the train/deploy lifecycle, plus the `dase-engine`
command line:

    dase-engine train [--no-wait]
    dase-engine deploy [--instance-id N]
    dase-engine status
    dase-engine serve [--host H] [--port P]

Training and deploying are independent: a train run only produces a trained
instance, and a deploy only moves the current pointer.
"""

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from . import config
from .engine import Engine, EngineFactory, load_engine_config
from .exceptions import DeployInconsistency, EngineError
from .model_store import EngineInstance, FileModelStore, ModelStore
from .pipeline import run_training_pipeline, start_instance

logger = logging.getLogger(__name__)


class EngineConsole:
    """
    Triggers train runs and deploys for one engine against one store.

    Args:
        engine: Wired engine
        store: Model store shared with the serving runtime
        max_workers: Parallel trainings per run (uses config default if None)
    """

    def __init__(self, engine: Engine, store: ModelStore, max_workers: Optional[int] = None):
        self.engine = engine
        self.store = store
        self.max_workers = max_workers
        self._threads: List[threading.Thread] = []

    def trigger_train(self, block: bool = True) -> int:
        """
        Start a train run and return its instance id.

        With block=False the run continues in a background thread; its outcome
        is recorded on the instance (trained or failed).

        Raises:
            EngineError: (blocking only) the run failed; the instance is failed
        """
        instance = start_instance(self.engine, self.store)
        if block:
            run_training_pipeline(self.engine, self.store, instance=instance,
                                  max_workers=self.max_workers)
            return instance.instance_id

        def _run():
            try:
                run_training_pipeline(self.engine, self.store, instance=instance,
                                      max_workers=self.max_workers)
            except EngineError as e:
                # Recorded on the instance by the pipeline
                logger.error(f"Background training of instance {instance.instance_id} failed: {e}")

        thread = threading.Thread(target=_run, name=f"train-{instance.instance_id}")
        thread.start()
        self._threads.append(thread)
        logger.info(f"Training instance {instance.instance_id} in the background")
        return instance.instance_id

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for background train runs started by this console."""
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]

    def trigger_deploy(self, instance_id: Optional[int] = None) -> EngineInstance:
        """
        Make an instance current (default: the latest trained one).

        Raises:
            DeployInconsistency: nothing deployable, or the instance isn't trained
        """
        if instance_id is None:
            latest = self.store.latest_trained()
            if latest is None:
                raise DeployInconsistency("No trained instance to deploy")
            instance_id = latest.instance_id
        return self.store.set_current(instance_id)

    def status(self) -> Dict[str, Any]:
        instances = self.store.list_instances()
        counts: Dict[str, int] = {}
        for instance in instances:
            counts[instance.status.value] = counts.get(instance.status.value, 0) + 1
        latest = self.store.latest_trained()
        current = self.store.get_current()
        return {
            "engine_id": self.engine.engine_id,
            "algorithms": self.engine.algorithm_names,
            "current_instance": current,
            "latest_trained": latest.instance_id if latest else None,
            "instances": counts,
            "instance_list": [
                {
                    "instance_id": instance.instance_id,
                    "status": instance.status.value,
                    "is_current": instance.instance_id == current,
                }
                for instance in instances
            ],
        }


def build_console(engine_json: Union[str, Path], store_dir: Union[str, Path]) -> EngineConsole:
    engine = EngineFactory().build(load_engine_config(engine_json))
    return EngineConsole(engine, FileModelStore(store_dir))


# ============================================================================
# COMMAND LINE
# ============================================================================

def _cmd_train(console: EngineConsole, args) -> int:
    instance_id = console.trigger_train(block=not args.no_wait)
    if args.no_wait:
        print(f"Started training instance {instance_id}")
        # The run lives in a non-daemon thread, so the process waits for it
        return 0
    instance = console.store.get_instance(instance_id)
    print(f"Instance {instance_id}: {instance.status.value} "
          f"in {instance.metadata.get('training_time_sec', 0):.2f}s")
    return 0


def _cmd_deploy(console: EngineConsole, args) -> int:
    instance = console.trigger_deploy(args.instance_id)
    print(f"Deployed instance {instance.instance_id}")
    return 0


def _cmd_status(console: EngineConsole, args) -> int:
    print(json.dumps(console.status(), indent=2))
    return 0


def _cmd_serve(console: EngineConsole, args) -> int:
    from .deploy import EngineServer
    from .serve.app import create_app

    server = EngineServer(console.engine, console.store)
    try:
        server.reload()
    except EngineError as e:
        logger.error(f"Failed to load current instance: {e}")
        logger.warning("Service starting without a deployed instance - queries will fail")
    if config.SERVING_CONFIG["poll_interval_sec"] > 0:
        server.start_watcher(config.SERVING_CONFIG["poll_interval_sec"])

    app = create_app(server)
    host = args.host or config.SERVING_CONFIG["host"]
    port = args.port or config.SERVING_CONFIG["port"]
    logger.info(f"Starting Flask server on {host}:{port}")
    try:
        app.run(host=host, port=port, debug=config.SERVING_CONFIG["debug"], threaded=True)
    finally:
        server.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dase-engine",
                                     description="Train, deploy and serve a DASE engine")
    parser.add_argument("--engine-json", type=str, default=None,
                        help=f"Engine document (default: {config.ENGINE_CONFIG_PATH})")
    parser.add_argument("--store-dir", type=str, default=None,
                        help=f"Model store root (default: {config.STORE_DIR})")
    sub = parser.add_subparsers(dest="command", required=True)

    train = sub.add_parser("train", help="Run a training pipeline")
    train.add_argument("--no-wait", action="store_true",
                       help="Return the instance id without waiting for the run")
    train.set_defaults(func=_cmd_train)

    deploy = sub.add_parser("deploy", help="Make a trained instance current")
    deploy.add_argument("--instance-id", type=int, default=None,
                        help="Instance to deploy (default: latest trained)")
    deploy.set_defaults(func=_cmd_deploy)

    status = sub.add_parser("status", help="Show instances and the current pointer")
    status.set_defaults(func=_cmd_status)

    serve = sub.add_parser("serve", help="Serve queries for the current instance")
    serve.add_argument("--host", type=str, default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=_cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    args = build_parser().parse_args(argv)

    try:
        console = build_console(args.engine_json or config.ENGINE_CONFIG_PATH,
                                args.store_dir or config.STORE_DIR)
        return args.func(console, args)
    except (EngineError, ValueError, FileNotFoundError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
