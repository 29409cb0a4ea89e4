"""영상 바이트 저장소 (Blob Store).

S3 설정이 없으면 로컬 디렉토리에 저장한다. 업로드 중에는 청크를 offset 단위
part 객체로 저장하고, 완료 시 하나의 객체로 합치면서 SHA-256 을 계산한다.

Key layout inside a video's namespace::

    <video_id>/parts/<offset:020d>   partial upload chunks
    <video_id>/<sha256>              assembled blob (the Video's blob_ref)
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tempfile
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import aiofiles
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from app.config import get_settings
from app.core.exceptions import NotFoundError, TransientInfraError

settings = get_settings()
logger = logging.getLogger(__name__)

_COPY_BUFFER = 1024 * 1024


@dataclass(frozen=True)
class AssembledBlob:
    blob_ref: str
    sha256: str
    size_bytes: int


def part_key(video_id: str, offset: int) -> str:
    return f"{video_id}/parts/{offset:020d}"


class BlobStore(ABC):
    """Storage backend interface. Every call is bounded by ``blob_timeout_seconds``."""

    @abstractmethod
    async def write_part(self, video_id: str, offset: int, data: bytes) -> None:
        """Store (or overwrite) the chunk starting at ``offset``."""

    @abstractmethod
    async def assemble(self, video_id: str, offsets: list[int]) -> AssembledBlob:
        """Concatenate parts in offset order into the final object and drop the parts."""

    @abstractmethod
    async def read_range(self, blob_ref: str, start: int, length: int) -> bytes:
        ...

    @abstractmethod
    async def size(self, blob_ref: str) -> int:
        ...

    @abstractmethod
    async def delete_namespace(self, video_id: str) -> None:
        """Remove every object owned by ``video_id`` (parts and final blob)."""

    @abstractmethod
    async def access_url(self, blob_ref: str) -> str:
        """URL handed to external collaborators (the scorer) to fetch the blob."""

    @abstractmethod
    def local_copy(self, blob_ref: str):
        """Async context manager yielding a local ``Path`` with the blob's bytes."""

    async def iter_range(self, blob_ref: str, start: int, length: int, chunk_size: int = _COPY_BUFFER):
        """Yield ``length`` bytes from ``start`` in pieces of at most ``chunk_size``."""
        end = start + length
        while start < end:
            n = min(chunk_size, end - start)
            yield await with_blob_deadline(self.read_range(blob_ref, start, n), "blob read")
            start += n

    async def download_url(self, blob_ref: str) -> str | None:
        """Where clients should fetch the blob directly, or None to stream it through the API."""
        return None


class LocalBlobStore(BlobStore):
    """로컬 개발용 저장소."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    async def write_part(self, video_id: str, offset: int, data: bytes) -> None:
        path = self._path(part_key(video_id, offset))
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a retried chunk never leaves a torn part behind
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
        os.replace(tmp_path, path)

    async def assemble(self, video_id: str, offsets: list[int]) -> AssembledBlob:
        digest = hashlib.sha256()
        size = 0
        staging = self._path(f"{video_id}/assembling.tmp")
        staging.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(staging, "wb") as out:
            for offset in sorted(offsets):
                part = self._path(part_key(video_id, offset))
                if not part.exists():
                    raise NotFoundError("Upload part", f"{video_id}@{offset}")
                async with aiofiles.open(part, "rb") as f:
                    while True:
                        buf = await f.read(_COPY_BUFFER)
                        if not buf:
                            break
                        digest.update(buf)
                        size += len(buf)
                        await out.write(buf)

        blob_ref = f"{video_id}/{digest.hexdigest()}"
        os.replace(staging, self._path(blob_ref))
        await asyncio.to_thread(shutil.rmtree, self._path(f"{video_id}/parts"), True)
        return AssembledBlob(blob_ref=blob_ref, sha256=digest.hexdigest(), size_bytes=size)

    async def read_range(self, blob_ref: str, start: int, length: int) -> bytes:
        path = self._path(blob_ref)
        if not path.exists():
            raise NotFoundError("Blob", blob_ref)
        async with aiofiles.open(path, "rb") as f:
            await f.seek(start)
            return await f.read(length)

    async def iter_range(self, blob_ref: str, start: int, length: int, chunk_size: int = _COPY_BUFFER):
        path = self._path(blob_ref)
        if not path.exists():
            raise NotFoundError("Blob", blob_ref)
        async with aiofiles.open(path, "rb") as f:
            await f.seek(start)
            remaining = length
            while remaining > 0:
                buf = await with_blob_deadline(f.read(min(chunk_size, remaining)), "blob read")
                if not buf:
                    break
                remaining -= len(buf)
                yield buf

    async def size(self, blob_ref: str) -> int:
        path = self._path(blob_ref)
        if not path.exists():
            raise NotFoundError("Blob", blob_ref)
        return path.stat().st_size

    async def delete_namespace(self, video_id: str) -> None:
        await asyncio.to_thread(shutil.rmtree, self._path(video_id), True)

    async def access_url(self, blob_ref: str) -> str:
        return self._path(blob_ref).as_uri()

    @asynccontextmanager
    async def local_copy(self, blob_ref: str):
        path = self._path(blob_ref)
        if not path.exists():
            raise NotFoundError("Blob", blob_ref)
        yield path


class S3BlobStore(BlobStore):
    """S3 저장소. boto3 는 동기 클라이언트이므로 스레드에서 실행한다."""

    def __init__(self, bucket: str, client=None):
        self.bucket = bucket
        self.client = client or _get_s3_client()

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise NotFoundError("Blob", kwargs.get("Key", ""))
            raise TransientInfraError(f"S3 request failed: {e}")
        except BotoCoreError as e:
            raise TransientInfraError(f"S3 unavailable: {e}")

    async def write_part(self, video_id: str, offset: int, data: bytes) -> None:
        await self._call(
            self.client.put_object,
            Bucket=self.bucket,
            Key=part_key(video_id, offset),
            Body=data,
        )

    async def assemble(self, video_id: str, offsets: list[int]) -> AssembledBlob:
        digest = hashlib.sha256()
        size = 0
        with tempfile.SpooledTemporaryFile(max_size=64 * 1024 * 1024) as spool:
            for offset in sorted(offsets):
                obj = await self._call(
                    self.client.get_object, Bucket=self.bucket, Key=part_key(video_id, offset)
                )
                data = await asyncio.to_thread(obj["Body"].read)
                digest.update(data)
                size += len(data)
                spool.write(data)
            spool.seek(0)
            blob_ref = f"{video_id}/{digest.hexdigest()}"
            await self._call(self.client.upload_fileobj, spool, self.bucket, blob_ref)

        await self._delete_prefix(f"{video_id}/parts/")
        return AssembledBlob(blob_ref=blob_ref, sha256=digest.hexdigest(), size_bytes=size)

    async def read_range(self, blob_ref: str, start: int, length: int) -> bytes:
        obj = await self._call(
            self.client.get_object,
            Bucket=self.bucket,
            Key=blob_ref,
            Range=f"bytes={start}-{start + length - 1}",
        )
        return await asyncio.to_thread(obj["Body"].read)

    async def size(self, blob_ref: str) -> int:
        head = await self._call(self.client.head_object, Bucket=self.bucket, Key=blob_ref)
        return int(head["ContentLength"])

    async def delete_namespace(self, video_id: str) -> None:
        await self._delete_prefix(f"{video_id}/")

    async def _delete_prefix(self, prefix: str) -> None:
        paginator = self.client.get_paginator("list_objects_v2")

        def _collect():
            keys = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend({"Key": obj["Key"]} for obj in page.get("Contents", []))
            return keys

        keys = await self._call(_collect)
        # delete_objects accepts at most 1000 keys per request
        for i in range(0, len(keys), 1000):
            await self._call(
                self.client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": keys[i:i + 1000], "Quiet": True},
            )

    async def access_url(self, blob_ref: str) -> str:
        return await self._call(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": self.bucket, "Key": blob_ref},
            ExpiresIn=settings.presigned_url_expire_seconds,
        )

    async def download_url(self, blob_ref: str) -> str | None:
        # S3 serves Range requests itself
        return await self.access_url(blob_ref)

    @asynccontextmanager
    async def local_copy(self, blob_ref: str):
        with tempfile.TemporaryDirectory(prefix="vidsecure-") as tmp_dir:
            path = Path(tmp_dir) / Path(blob_ref).name
            await self._call(self.client.download_file, self.bucket, blob_ref, str(path))
            yield path


def _get_s3_client():
    return boto3.client(
        "s3",
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name=settings.aws_region,
        config=BotoConfig(
            connect_timeout=settings.blob_timeout_seconds,
            read_timeout=settings.blob_timeout_seconds,
            retries={"max_attempts": 3},
        ),
    )


async def with_blob_deadline(coro, what: str = "blob operation"):
    """Await ``coro`` with the blob deadline; a timeout becomes TransientInfraError."""
    try:
        return await asyncio.wait_for(coro, timeout=settings.blob_timeout_seconds)
    except asyncio.TimeoutError:
        raise TransientInfraError(f"{what} timed out after {settings.blob_timeout_seconds}s")
    except OSError as e:
        raise TransientInfraError(f"{what} failed: {e}")


@lru_cache
def get_blob_store() -> BlobStore:
    """영상 저장소 선택. S3 설정이 없으면 로컬 저장."""
    if settings.aws_access_key_id:
        logger.info(f"Using S3 blob store: bucket={settings.s3_bucket_name}")
        return S3BlobStore(settings.s3_bucket_name)
    logger.info(f"Using local blob store: {settings.local_storage_dir}")
    return LocalBlobStore(settings.local_storage_dir)
