#  Generation Broker - Generic Remote API Executor
#
#  Submits input.payload to input.target_url, polls a query URL until the
#  job reports a terminal status, then re-hosts the produced file.
#
#  Input fields:
#    target_url          required
#    method              default POST
#    payload             request body
#    query_url_template  default "<target_url>/%s"
#    result_file_key     default "file_url"
#
#  Depends on: config.py, executors/base.py, logging_config.py
#  Used by:    executors/registry.py

import logging
import uuid

import httpx

from broker.config import HTTP_REQUEST_TIMEOUT, POLL_INTERVAL, REMOTE_API_TIMEOUT
from broker.exceptions import RemoteFailureError, TransientIOError, ValidationError
from broker.executors.base import (
    RemoteIdRecorder,
    TaskExecutor,
    Uploader,
    auth_headers,
    decode_json,
    download_and_upload,
    poll_until,
    raise_for_submit_status,
    url_extension,
)
from broker.logging_config import update_task_context
from broker.models.records import Task

logger = logging.getLogger("broker.executors.remote_api")

_SUCCESS = {"completed", "success", "succeeded"}
_FAILURE = {"failed", "error"}


class RemoteApiExecutor(TaskExecutor):
    name = "remote_api"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        uploader: Uploader,
        record_remote_id: RemoteIdRecorder | None = None,
        *,
        poll_interval: float = POLL_INTERVAL,
        timeout: float = REMOTE_API_TIMEOUT,
        request_timeout: float = HTTP_REQUEST_TIMEOUT,
    ):
        self._http = http_client
        self._uploader = uploader
        self._record_remote_id = record_remote_id
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._request_timeout = request_timeout

    async def run(self, task: Task) -> dict:
        params = task.input
        target_url = params.get("target_url")
        if not target_url or not isinstance(target_url, str):
            raise ValidationError("missing target_url")
        method = (params.get("method") or "POST").upper()
        headers = auth_headers()

        remote_id = task.remote_task_id
        if remote_id:
            logger.info("Task %s resuming remote job %s", task.id, remote_id)
        else:
            remote_id = await self._submit(method, target_url, params.get("payload") or {}, headers)
            if self._record_remote_id:
                await self._record_remote_id(task.id, remote_id)
            update_task_context(remote_task_id=remote_id)
            logger.info("Task %s submitted as remote job %s", task.id, remote_id)

        template = params.get("query_url_template") or target_url.rstrip("/") + "/%s"
        query_url = template.replace("%s", remote_id) if "%s" in template else template
        file_key = params.get("result_file_key") or "file_url"

        def check(data: dict) -> dict | None:
            status = str(data.get("status") or "").lower()
            if status in _SUCCESS:
                for key in (file_key, "result_url", "url"):
                    url = data.get(key)
                    if isinstance(url, str) and url:
                        return {"file_url": url}
                raise RemoteFailureError("completed but file url not found")
            if status in _FAILURE:
                raise RemoteFailureError(f"remote task failed: {data}")
            return None

        found = await poll_until(
            self._http, query_url, headers,
            interval=self._poll_interval,
            timeout=self._timeout,
            request_timeout=self._request_timeout,
            check=check,
        )
        file_url = found["file_url"]

        oss_url = await download_and_upload(
            self._http, file_url,
            filename=f"task_{task.id}_{uuid.uuid4().hex}{url_extension(file_url, 10)}",
            object_key=lambda base: f"tasks/{task.id}/{base}",
            uploader=self._uploader,
        )
        return {"oss_url": oss_url, "original_url": file_url, "remote_task_id": remote_id}

    async def _submit(self, method: str, url: str, payload: dict, headers: dict) -> str:
        try:
            resp = await self._http.request(
                method, url, json=payload, headers=headers, timeout=self._request_timeout,
            )
        except httpx.TransportError as e:
            raise TransientIOError(f"request failed: {e}") from e
        raise_for_submit_status(resp)
        data = decode_json(resp)

        for key in ("task_id", "id"):
            value = data.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
                return str(value)
        raise RemoteFailureError("could not find task_id in response")
