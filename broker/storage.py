#  Generation Broker - Object Storage
#
#  Uploaders for executor artifacts. The local store copies files under a
#  directory the app serves at /objects; the bucket store pushes them to an
#  OSS bucket through its S3-compatible endpoint. Both expose
#  async upload(local_path, object_key) -> public url.
#
#  Depends on: config.py
#  Used by:    container.py, app.py, executors/*

import asyncio
import logging
import shutil
from pathlib import Path, PurePosixPath

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from broker.config import (
    OSS_ACCESS_KEY_ID,
    OSS_ACCESS_KEY_SECRET,
    OSS_BUCKET,
    OSS_ENDPOINT,
    OSS_REGION,
    STORAGE_PUBLIC_BASE_URL,
    STORAGE_ROOT,
)
from broker.exceptions import TransientIOError, ValidationError

logger = logging.getLogger("broker.storage")


def _check_key(object_key: str) -> PurePosixPath:
    key = PurePosixPath(object_key)
    if key.is_absolute() or ".." in key.parts or not key.parts:
        raise ValidationError(f"Invalid object key: {object_key!r}")
    return key


class LocalObjectStore:
    def __init__(self, root: str | Path = STORAGE_ROOT, public_base_url: str = STORAGE_PUBLIC_BASE_URL):
        self._root = Path(root)
        self._base_url = public_base_url.rstrip("/")

    def _target(self, object_key: str) -> Path:
        return self._root.joinpath(*_check_key(object_key).parts)

    async def upload(self, local_path: str | Path, object_key: str) -> str:
        target = self._target(object_key)

        def _copy():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, target)

        try:
            await asyncio.to_thread(_copy)
        except OSError as e:
            raise TransientIOError(f"Failed to store {object_key}: {e}") from e
        logger.info("Stored object %s", object_key)
        return f"{self._base_url}/{object_key}"


class BucketObjectStore:
    """Public-read OSS bucket addressed virtual-host style.

    URLs take the form <scheme>://<bucket>.<endpoint host>/<key>.
    """

    def __init__(
        self,
        endpoint: str = OSS_ENDPOINT,
        bucket: str = OSS_BUCKET,
        *,
        region: str = OSS_REGION,
        access_key_id: str = OSS_ACCESS_KEY_ID,
        access_key_secret: str = OSS_ACCESS_KEY_SECRET,
        client=None,
    ):
        if "://" not in endpoint:
            endpoint = f"https://{endpoint}"
        self._scheme, self._host = endpoint.rstrip("/").split("://", 1)
        self._bucket = bucket
        self._client = client or boto3.client(
            "s3",
            endpoint_url=f"{self._scheme}://{self._host}",
            region_name=region.removeprefix("oss-") or None,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=access_key_secret,
            config=BotoConfig(s3={"addressing_style": "virtual"}),
        )

    def public_url(self, object_key: str) -> str:
        return f"{self._scheme}://{self._bucket}.{self._host}/{object_key}"

    async def upload(self, local_path: str | Path, object_key: str) -> str:
        _check_key(object_key)
        try:
            await asyncio.to_thread(
                self._client.upload_file, str(local_path), self._bucket, object_key,
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise TransientIOError(f"Failed to upload {object_key}: {e}") from e
        logger.info("Uploaded object %s to bucket %s", object_key, self._bucket)
        return self.public_url(object_key)


def build_object_store():
    """Bucket store when OSS is configured, else the local store."""
    if OSS_ENDPOINT:
        return BucketObjectStore()
    return LocalObjectStore()
