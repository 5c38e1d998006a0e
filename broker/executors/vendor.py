#  Generation Broker - Vendor Executor (jiekou async API)
#
#  Input fields:
#    data    request body sent to model.model_url
#    model   {model_url, headers?, query_url_template?}
#
#  The remote id is written back to the task before polling so a crash
#  between submission and completion leaves a resumable breadcrumb. A task
#  that already carries a remote id skips submission entirely.
#
#  Depends on: config.py, executors/base.py, logging_config.py
#  Used by:    executors/registry.py

import logging

import httpx

from broker.config import (
    HTTP_REQUEST_TIMEOUT,
    POLL_INTERVAL,
    VENDOR_DEFAULT_QUERY_URL,
    VENDOR_TIMEOUT,
)
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

logger = logging.getLogger("broker.executors.vendor")

_SUCCESS = {"TASK_STATUS_SUCCEED", "SUCCESS", "COMPLETED", "SUCCEEDED"}
_FAILURE = {"TASK_STATUS_FAILED", "FAILED", "ERROR"}

# (list key, url key) pairs checked in order on a successful result
_MEDIA_KEYS = (("videos", "video_url"), ("images", "image_url"), ("audios", "audio_url"))
_URL_KEYS = ("url", "file_url", "result_url", "output")


def _id_value(value) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return ""


def extract_remote_id(resp: dict) -> str:
    """data.id / data.task_id, then root id / task_id, then data as a bare string."""
    data = resp.get("data")
    if isinstance(data, dict):
        for key in ("id", "task_id"):
            found = _id_value(data.get(key))
            if found:
                return found
    for key in ("id", "task_id"):
        found = _id_value(resp.get(key))
        if found:
            return found
    if isinstance(data, str) and data:
        return data
    return ""


def task_info(status_data: dict) -> dict:
    for key in ("task", "data"):
        value = status_data.get(key)
        if isinstance(value, dict):
            return value
    return status_data


def artifact_url(status_data: dict, info: dict) -> str:
    for source in (status_data, info):
        for list_key, url_key in _MEDIA_KEYS:
            items = source.get(list_key)
            if isinstance(items, list) and items and isinstance(items[0], dict):
                url = items[0].get(url_key)
                if isinstance(url, str) and url:
                    return url
    for key in _URL_KEYS:
        url = info.get(key)
        if isinstance(url, str) and url:
            return url
    return ""


class VendorExecutor(TaskExecutor):
    name = "jiekou_api"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        uploader: Uploader,
        record_remote_id: RemoteIdRecorder | None = None,
        *,
        poll_interval: float = POLL_INTERVAL,
        timeout: float = VENDOR_TIMEOUT,
        request_timeout: float = HTTP_REQUEST_TIMEOUT,
        default_query_url: str = VENDOR_DEFAULT_QUERY_URL,
    ):
        self._http = http_client
        self._uploader = uploader
        self._record_remote_id = record_remote_id
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._request_timeout = request_timeout
        self._default_query_url = default_query_url

    async def run(self, task: Task) -> dict:
        params = task.input
        model = params.get("model")
        if not isinstance(model, dict):
            raise ValidationError("missing data or model in input")
        headers = auth_headers(model.get("headers") if isinstance(model.get("headers"), dict) else None)

        remote_id = task.remote_task_id
        query_url = ""
        if remote_id:
            logger.info("Task %s resuming vendor job %s", task.id, remote_id)
        else:
            payload = params.get("data")
            model_url = model.get("model_url")
            if not isinstance(payload, dict):
                raise ValidationError("missing data or model in input")
            if not model_url or not isinstance(model_url, str):
                raise ValidationError("missing model_url")
            resp = await self._submit(model_url, payload, headers)
            remote_id = extract_remote_id(resp)
            if not remote_id:
                raise RemoteFailureError(f"could not find task_id in response: {resp}")
            if self._record_remote_id:
                await self._record_remote_id(task.id, remote_id)
            update_task_context(remote_task_id=remote_id)
            logger.info("Task %s submitted as vendor job %s", task.id, remote_id)
            data = resp.get("data")
            if isinstance(data, dict) and isinstance(data.get("query_url"), str):
                query_url = data["query_url"]

        if not query_url:
            template = model.get("query_url_template") or self._default_query_url
            query_url = template.replace("%s", remote_id)

        def check(status_data: dict) -> dict | None:
            info = task_info(status_data)
            raw_status = str(info.get("status") or "")
            status = raw_status.upper()
            if status in _SUCCESS:
                url = artifact_url(status_data, info)
                if not url:
                    raise RemoteFailureError(
                        f"completed but file url not found in response: {status_data}"
                    )
                return {"file_url": url}
            if status in _FAILURE:
                reason = info.get("reason") or ""
                raise RemoteFailureError(f"remote task failed: {reason} (status: {raw_status})")
            return None

        found = await poll_until(
            self._http, query_url, headers,
            interval=self._poll_interval,
            timeout=self._timeout,
            request_timeout=self._request_timeout,
            check=check,
        )
        file_url = found["file_url"]

        file_name = remote_id.replace("/", "_") + (url_extension(file_url, 6) or ".mp4")
        oss_url = await download_and_upload(
            self._http, file_url,
            filename=file_name,
            object_key=lambda base: f"tasks/{base}",
            uploader=self._uploader,
        )
        return {"oss_url": oss_url, "original_url": file_url, "remote_task_id": remote_id}

    async def _submit(self, url: str, payload: dict, headers: dict) -> dict:
        try:
            resp = await self._http.post(
                url, json=payload, headers=headers, timeout=self._request_timeout,
            )
        except httpx.TransportError as e:
            raise TransientIOError(f"request failed: {e}") from e
        raise_for_submit_status(resp)
        return decode_json(resp)
