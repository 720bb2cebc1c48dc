"""S3 compatible implementation of the object store gateway."""

import logging
import urllib.parse
from collections.abc import AsyncIterator

from aiobotocore.session import get_session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ObjectStoreException
from .blob import BlobNotFoundException, BlobStorage

logger = logging.getLogger(__name__)

__all__ = ["S3BlobStorage"]

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _error_code(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Code", ""))


class S3BlobStorage(BlobStorage):
    """Object store backed by an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        prefix: str = "",
    ) -> None:
        """Create an S3 blob storage.

        Args:
            bucket: The name of the S3 bucket.
            endpoint_url: Endpoint of an S3 compatible service, None for AWS.
            region: The region of the bucket.
            access_key_id: Access key, None to use the default credential chain.
            secret_access_key: Secret key, None to use the default credential chain.
            prefix: Prefix prepended to every key inside the bucket.
        """
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self._session = get_session()

    def to_s3_key(self, key: str) -> str:
        """Full key of an object inside the bucket."""
        return f"{self.prefix}{key}"

    def _create_client(self):
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        return self._session.create_client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    async def put(
        self, key: str, data: bytes, content_type: str | None = None
    ) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            async with self._create_client() as client:
                await client.put_object(
                    Bucket=self.bucket, Key=self.to_s3_key(key), Body=data, **extra
                )
        except (ClientError, BotoCoreError) as err:
            raise ObjectStoreException(key, f"Failed to upload {key}: {err}") from err

    async def get(self, key: str) -> AsyncIterator[bytes]:
        async with self._create_client() as client:
            try:
                response = await client.get_object(
                    Bucket=self.bucket, Key=self.to_s3_key(key)
                )
            except ClientError as err:
                if _error_code(err) in _NOT_FOUND_CODES:
                    raise BlobNotFoundException(key, f"Object {key} not found") from err
                raise ObjectStoreException(key, f"Failed to download {key}: {err}") from err
            except BotoCoreError as err:
                raise ObjectStoreException(key, f"Failed to download {key}: {err}") from err
            async with response["Body"] as stream:
                async for chunk in stream.iter_chunks():
                    yield chunk

    async def delete(self, key: str) -> bool:
        try:
            async with self._create_client() as client:
                await client.delete_object(Bucket=self.bucket, Key=self.to_s3_key(key))
        except (ClientError, BotoCoreError) as err:
            logger.warning(f"Failed to delete object {key}: {err}")
            return False
        return True

    async def exists(self, key: str) -> bool:
        try:
            async with self._create_client() as client:
                await client.head_object(Bucket=self.bucket, Key=self.to_s3_key(key))
        except ClientError as err:
            if _error_code(err) in _NOT_FOUND_CODES:
                return False
            raise ObjectStoreException(key, f"Failed to check {key}: {err}") from err
        except BotoCoreError as err:
            raise ObjectStoreException(key, f"Failed to check {key}: {err}") from err
        return True

    async def copy(self, source_key: str, dest_key: str) -> bool:
        try:
            async with self._create_client() as client:
                await client.copy_object(
                    Bucket=self.bucket,
                    CopySource={"Bucket": self.bucket, "Key": self.to_s3_key(source_key)},
                    Key=self.to_s3_key(dest_key),
                )
        except (ClientError, BotoCoreError) as err:
            logger.warning(f"Failed to copy object {source_key} to {dest_key}: {err}")
            return False
        return True

    async def presigned_url(
        self, key: str, ttl_seconds: int, download_name: str | None = None
    ) -> str:
        params = {"Bucket": self.bucket, "Key": self.to_s3_key(key)}
        if download_name:
            # Force download instead of inline preview
            quoted = urllib.parse.quote(download_name)
            params["ResponseContentDisposition"] = f"attachment; filename=\"{quoted}\""
        try:
            async with self._create_client() as client:
                return await client.generate_presigned_url(
                    "get_object", Params=params, ExpiresIn=ttl_seconds
                )
        except (ClientError, BotoCoreError) as err:
            raise ObjectStoreException(key, f"Failed to presign {key}: {err}") from err
