#  Generation Broker - Executor Registry
#
#  Name -> executor map plus the after-execution hook chain.
#  Built-in executors are instantiated when the registry is created;
#  individual failures are logged but don't prevent the others from loading.
#  Registration happens at start-up on the event loop; lookups never await,
#  so no lock is needed.
#
#  Depends on: executors/base.py, executors/remote_api.py, executors/vendor.py,
#              executors/simulated.py
#  Used by:    container.py, services/task_lifecycle.py, services/worker_pool.py,
#              services/polling.py

import inspect
import logging
from collections.abc import Awaitable, Callable

import httpx

from broker.executors.base import RemoteIdRecorder, TaskExecutor, Uploader
from broker.models.records import Task

logger = logging.getLogger("broker.executors.registry")

# hook(task, result); may be sync or async; must be idempotent
AfterExecutionHook = Callable[[Task, dict], Awaitable[None] | None]

REMOTE_API = "remote_api"
VENDOR_API = "jiekou_api"
SIMULATED = "simulated"


def log_artifact_hook(task: Task, result: dict):
    logger.info(
        "Task %s produced %s (remote job %s)",
        task.id,
        result.get("oss_url") or result.get("result_url") or "no artifact",
        result.get("remote_task_id") or task.remote_task_id or "-",
    )


class ExecutorRegistry:
    """Registry of executors available to the worker pool and polling supervisor.

    Accepts the shared httpx.AsyncClient, the uploader and the remote-id
    recorder so the built-in executors share connection pooling and storage.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        uploader: Uploader | None = None,
        record_remote_id: RemoteIdRecorder | None = None,
        *,
        register_defaults: bool = True,
    ):
        self._executors: dict[str, TaskExecutor] = {}
        self._hooks: list[AfterExecutionHook] = []
        self._failed: list[str] = []
        self._http_client = http_client
        self._uploader = uploader
        self._record_remote_id = record_remote_id
        if register_defaults:
            self._register_defaults()

    def _register_defaults(self):
        """Register the built-in executors and the artifact logging hook."""

        def _remote_api():
            from broker.executors.remote_api import RemoteApiExecutor
            return RemoteApiExecutor(self._http_client, self._uploader, self._record_remote_id)

        def _vendor():
            from broker.executors.vendor import VendorExecutor
            return VendorExecutor(self._http_client, self._uploader, self._record_remote_id)

        def _simulated():
            from broker.executors.simulated import SimulatedExecutor
            return SimulatedExecutor()

        factories = [
            (REMOTE_API, _remote_api),
            (VENDOR_API, _vendor),
            (SIMULATED, _simulated),
        ]
        for name, factory in factories:
            try:
                self.register(name, factory())
            except Exception as e:
                logger.warning("Failed to register executor %s: %s", name, e)
                self._failed.append(name)

        self.add_hook(log_artifact_hook)
        logger.info("Registered %d/%d executors", len(self._executors), len(factories))

    @property
    def failed_executors(self) -> list[str]:
        return list(self._failed)

    def register(self, name: str, executor: TaskExecutor):
        if name in self._executors:
            logger.info("Replacing executor %s", name)
        self._executors[name] = executor

    def get(self, name: str) -> TaskExecutor | None:
        return self._executors.get(name)

    def names(self) -> list[str]:
        return list(self._executors.keys())

    def add_hook(self, hook: AfterExecutionHook):
        self._hooks.append(hook)

    async def run_hooks(self, task: Task, result: dict) -> list[Exception]:
        """Run every hook in order. A failing hook is logged and the chain continues."""
        errors: list[Exception] = []
        for hook in list(self._hooks):
            try:
                outcome = hook(task, result)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(
                    "After-execution hook %s failed for task %s: %s",
                    getattr(hook, "__name__", repr(hook)), task.id, e,
                )
                errors.append(e)
        return errors
