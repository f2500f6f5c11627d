"""
Document Storage — read-only access to uploaded source documents

Accepted storage URL forms:

    s3://<bucket>/<key>          explicit bucket
    <key>                        key inside settings.s3_bucket
    https://host/path            pre-signed or public URL (fetched with httpx)

Uploads happen elsewhere; the pipeline only ever downloads.  Every failure
(missing object, access denied, network error, non-2xx response) surfaces as
DownloadError so the orchestrator can fail the session at the download stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import aioboto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from docqa.core.config import Settings
from docqa.core.errors import DownloadError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class S3Location:
    bucket: str
    key:    str

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


def parse_s3_location(storage_url: str, default_bucket: str) -> S3Location:
    """Resolve ``s3://bucket/key`` or a bare key against the default bucket."""
    if storage_url.startswith("s3://"):
        parsed = urlparse(storage_url)
        key = parsed.path.lstrip("/")
        if not parsed.netloc or not key:
            raise DownloadError(f"Malformed S3 URL: {storage_url}", stage="download")
        return S3Location(bucket=parsed.netloc, key=key)
    key = storage_url.lstrip("/")
    if not key:
        raise DownloadError("Empty storage URL", stage="download")
    return S3Location(bucket=default_bucket, key=key)


class DocumentStorage:
    """Async fetch of document bytes from S3 or an HTTP(S) URL."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._session  = aioboto3.Session()

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict = {"region_name": self._settings.aws_region}
        # Local dev uses static keys; deployed workers use the task role
        if self._settings.aws_access_key_id:
            kwargs["aws_access_key_id"]     = self._settings.aws_access_key_id
            kwargs["aws_secret_access_key"] = self._settings.aws_secret_access_key
        return self._session.client("s3", **kwargs)

    async def fetch(self, storage_url: str) -> bytes:
        """
        Download a document.

        Raises:
            DownloadError: the object is missing or storage is unreachable.
        """
        if storage_url.startswith(("http://", "https://")):
            data = await self._fetch_http(storage_url)
        else:
            data = await self._fetch_s3(parse_s3_location(storage_url, self._settings.s3_bucket))
        logger.info("DocumentStorage | fetched url=%s bytes=%d", _redact(storage_url), len(data))
        return data

    async def _fetch_s3(self, location: S3Location) -> bytes:
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=location.bucket, Key=location.key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise DownloadError(
                        f"Object not found: {location.uri}",
                        stage="download", detail={"code": code},
                    ) from exc
                raise DownloadError(
                    f"S3 error {code} reading {location.uri}",
                    stage="download", detail={"code": code},
                ) from exc
            except BotoCoreError as exc:
                raise DownloadError(
                    f"S3 unreachable reading {location.uri}: {exc}", stage="download",
                ) from exc

    async def _fetch_http(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.download_timeout_seconds,
                follow_redirects=True,
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPStatusError as exc:
            raise DownloadError(
                f"HTTP {exc.response.status_code} fetching {_redact(url)}",
                stage="download", detail={"status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise DownloadError(
                f"Network error fetching {_redact(url)}: {type(exc).__name__}", stage="download",
            ) from exc


def _redact(url: str) -> str:
    """Drop the query string so pre-signed credentials never reach the logs."""
    return url.split("?", 1)[0]
