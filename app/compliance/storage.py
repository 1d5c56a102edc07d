from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import BinaryIO

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    pass


class ObjectMissing(StorageError):
    pass


class Storage:
    """Blob store for version content, addressed by slash-separated keys."""

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def get_bytes(self, key: str) -> bytes:
        fobj = self.open(key)
        try:
            return fobj.read()
        finally:
            fobj.close()

    def delete_many(self, keys: Iterable[str]) -> list[str]:
        """Delete every key; returns the keys that could not be removed."""
        failed: list[str] = []
        for key in keys:
            try:
                self.delete(key)
            except (StorageError, OSError) as e:
                logger.warning("Blob delete failed for %s: %s", key, e)
                failed.append(key)
        return failed


def normalize_key(key: str) -> str:
    parts = PurePosixPath(key.replace("\\", "/").lstrip("/")).parts
    if not parts or any(p in ("..", ".") for p in parts):
        raise StorageError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        return Path(self.root, *normalize_key(key).split("/"))

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def open(self, key: str) -> BinaryIO:
        try:
            return self._path(key).open("rb")
        except FileNotFoundError as e:
            raise ObjectMissing(f"Object not found: {key}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        path = self._path(key)
        path.unlink(missing_ok=True)
        # Drop now-empty version/document directories, never the root itself.
        parent = path.parent
        while parent != self.root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        try:
            import boto3  # type: ignore
        except ImportError as e:  # pragma: no cover
            raise StorageError("boto3 required for S3 storage. Install boto3.") from e
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    @staticmethod
    def _is_missing(err: Exception) -> bool:
        code = getattr(err, "response", {}).get("Error", {}).get("Code", "")
        return code in ("404", "NoSuchKey", "NotFound")

    def check_bucket(self) -> None:
        client = self._client()
        from botocore.exceptions import BotoCoreError, ClientError  # type: ignore

        try:
            client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot access S3 bucket {self.bucket!r}: {e}") from e

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        client = self._client()
        from botocore.exceptions import BotoCoreError, ClientError  # type: ignore

        extra: dict[str, object] = {"ContentType": content_type} if content_type else {}
        try:
            client.put_object(Bucket=self.bucket, Key=normalize_key(key), Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed for {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        client = self._client()
        from botocore.exceptions import BotoCoreError, ClientError  # type: ignore

        try:
            obj = client.get_object(Bucket=self.bucket, Key=normalize_key(key))
        except ClientError as e:
            if self._is_missing(e):
                raise ObjectMissing(f"Object not found: {key}") from e
            raise StorageError(f"S3 read failed for {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 read failed for {key}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        client = self._client()
        from botocore.exceptions import ClientError  # type: ignore

        try:
            client.head_object(Bucket=self.bucket, Key=normalize_key(key))
        except ClientError as e:
            if self._is_missing(e):
                return False
            raise StorageError(f"S3 head failed for {key}: {e}") from e
        return True

    def delete(self, key: str) -> None:
        client = self._client()
        from botocore.exceptions import BotoCoreError, ClientError  # type: ignore

        try:
            client.delete_object(Bucket=self.bucket, Key=normalize_key(key))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 delete failed for {key}: {e}") from e


S3_REQUIRED_KEYS = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def storage_from_config(config: Mapping) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    if backend != "local":
        raise StorageError(f"Unknown STORAGE_BACKEND {backend!r} (expected 'local' or 's3').")
    configured = (config.get("STORAGE_LOCAL_ROOT") or "").strip()
    return LocalStorage(root=Path(configured) if configured else Path.cwd() / "storage")
