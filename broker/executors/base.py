#  Generation Broker - Executor Base Class
#
#  Abstract base for task executors plus the HTTP helpers shared by the
#  built-in remote executors: header assembly, JSON decoding, artifact
#  download to a temp file and hand-off to the uploader.
#
#  Depends on: config.py, exceptions.py, models/records.py
#  Used by:    executors/registry.py, executors/remote_api.py, executors/vendor.py

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path

import httpx

from broker.config import HTTP_DOWNLOAD_TIMEOUT, JIEKOU_API_KEY
from broker.exceptions import PollTimeoutError, RemoteFailureError, TransientIOError
from broker.models.records import Task

logger = logging.getLogger("broker.executors")

# async upload(local_path, object_key) -> public_url
Uploader = Callable[[str, str], Awaitable[str]]

# async record(task_id, remote_task_id); persists the resume breadcrumb
RemoteIdRecorder = Callable[[int, str], Awaitable[None]]

# Transport-level failures that warrant another attempt
TRANSIENT_HTTP_ERRORS = (
    httpx.TransportError,
    httpx.HTTPStatusError,
)


class TaskExecutor(ABC):
    """Runs one task to completion and returns a result map.

    Implementations must skip remote submission when task.remote_task_id is
    already set, so a resumed task is polled instead of billed twice.
    """

    name: str = ""

    @abstractmethod
    async def run(self, task: Task) -> dict:
        ...


def auth_headers(extra: dict | None = None) -> dict:
    headers = {
        "Authorization": f"Bearer {JIEKOU_API_KEY}",
        "Content-Type": "application/json",
    }
    for k, v in (extra or {}).items():
        if isinstance(v, str):
            headers[k] = v
    return headers


def decode_json(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError as e:
        raise TransientIOError(f"Non-JSON response from {resp.request.url}") from e
    if not isinstance(data, dict):
        raise TransientIOError(f"Unexpected JSON body from {resp.request.url}")
    return data


def raise_for_submit_status(resp: httpx.Response):
    """Map a submission response status to the broker's error kinds."""
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientIOError(f"api returned error status: {resp.status_code}")
    if resp.status_code >= 400:
        raise RemoteFailureError(
            f"api returned error status: {resp.status_code}, body: {resp.text[:500]}"
        )


async def poll_until(
    http: httpx.AsyncClient,
    url: str,
    headers: dict,
    *,
    interval: float,
    timeout: float,
    request_timeout: float,
    check: Callable[[dict], dict | None],
) -> dict:
    """GET `url` every `interval` seconds until check() returns a result.

    check() returns None to keep polling and raises to stop with an error.
    Connection errors and unreadable bodies are logged and polled through.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        await asyncio.sleep(interval)
        if loop.time() > deadline:
            raise PollTimeoutError(f"task polling timed out after {timeout}s")
        try:
            resp = await http.get(url, headers=headers, timeout=request_timeout)
            data = decode_json(resp)
        except (httpx.TransportError, TransientIOError) as e:
            logger.warning("Polling error for %s: %s", url, e)
            continue
        result = check(data)
        if result is not None:
            return result


async def download_and_upload(
    http: httpx.AsyncClient,
    url: str,
    *,
    filename: str,
    object_key: Callable[[str], str],
    uploader: Uploader,
) -> str:
    """Fetch `url` into a temp file named `filename`, upload it, clean up.

    object_key receives the temp file's basename.
    """
    tmp_dir = tempfile.mkdtemp(prefix="broker_")
    tmp_path = Path(tmp_dir) / filename
    try:
        try:
            async with http.stream("GET", url, timeout=HTTP_DOWNLOAD_TIMEOUT) as resp:
                resp.raise_for_status()
                with open(tmp_path, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
        except TRANSIENT_HTTP_ERRORS as e:
            raise TransientIOError(f"Failed to download {url}: {e}") from e
        return await uploader(str(tmp_path), object_key(tmp_path.name))
    finally:
        await asyncio.to_thread(_cleanup, tmp_path, tmp_dir)


def _cleanup(path: Path, tmp_dir: str):
    if path.exists():
        path.unlink()
    os.rmdir(tmp_dir)


def url_extension(url: str, max_len: int) -> str:
    """Extension of the URL path (".mp4"), or "" when absent or implausibly long."""
    path = httpx.URL(url).path
    base = path.rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    ext = "." + base.rsplit(".", 1)[-1]
    return ext if len(ext) < max_len else ""
