#  Generation Broker - Logging Configuration
#
#  Configures structured logging with JSON or text format.
#  Context variables carry the HTTP request id and the task being worked
#  on (task_id, remote_task_id, executor) onto every record.
#
#  Depends on: (none)
#  Used by:    run.py, app.py, services/worker_pool.py, services/polling.py,
#              executors/remote_api.py, executors/vendor.py

import contextvars
import json
import logging
import sys
import time

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
task_context_var: contextvars.ContextVar[dict | None] = contextvars.ContextVar("task_context", default=None)


def set_request_id(rid: str | None):
    request_id_var.set(rid)


def bind_task(task_id: int | None, *, remote_task_id: str = "", executor: str = ""):
    """Attach a task to log records in the current context. None unbinds."""
    if task_id is None:
        task_context_var.set(None)
        return
    task_context_var.set({})
    update_task_context(task_id=task_id, remote_task_id=remote_task_id, executor=executor)


def update_task_context(**fields):
    """Merge non-empty fields into the bound task; no-op when nothing is bound."""
    ctx = task_context_var.get(None)
    if ctx is None:
        return
    task_context_var.set({**ctx, **{k: str(v) for k, v in fields.items() if v not in (None, "")}})


def task_context() -> dict:
    return dict(task_context_var.get(None) or {})


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON with context variables."""

    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_var.get(None)
        if rid:
            entry["request_id"] = rid
        entry.update(task_context())
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextFilter(logging.Filter):
    """Renders the context as ` [key=value ...]` into record.context."""

    def filter(self, record: logging.LogRecord) -> bool:
        parts = []
        rid = request_id_var.get(None)
        if rid:
            parts.append(f"request_id={rid}")
        parts.extend(f"{k}={v}" for k, v in task_context().items())
        record.context = f" [{' '.join(parts)}]" if parts else ""
        return True


_TEXT_FORMAT = "%(asctime)s [%(name)s]%(context)s %(levelname)s: %(message)s"


def setup_logging(level: str = "INFO", fmt: str = "json"):
    """Configure structured logging for the broker.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        fmt: Log format, "json" for structured output, "text" for human-readable.
    """
    root = logging.getLogger("broker")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        if fmt == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.addFilter(ContextFilter())
            handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
