#  Generation Broker - Simulated Executor
#
#  Fallback for inputs that name no executor, model or target URL.
#  Sleeps, then fails if input.prompt contains "fail", else returns {"status": "ok"}.
#
#  Depends on: config.py, executors/base.py
#  Used by:    executors/registry.py

import asyncio

from broker.config import SIMULATED_TASK_DELAY
from broker.exceptions import RemoteFailureError
from broker.executors.base import TaskExecutor
from broker.models.records import Task


class SimulatedExecutor(TaskExecutor):
    name = "simulated"

    def __init__(self, delay: float = SIMULATED_TASK_DELAY):
        self._delay = delay

    async def run(self, task: Task) -> dict:
        await asyncio.sleep(self._delay)
        prompt = task.input.get("prompt")
        if isinstance(prompt, str) and "fail" in prompt:
            raise RemoteFailureError("simulated failure")
        return {"status": "ok"}
