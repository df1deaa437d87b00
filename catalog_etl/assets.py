"""Product image pipeline: download, trim, resize, re-encode, upload."""
from __future__ import annotations

import logging
from io import BytesIO
from typing import Optional, Protocol

import boto3
import httpx
from PIL import Image

from .errors import AssetUploadFailure

LOGGER = logging.getLogger(__name__)

CONTENT_TYPE = "image/webp"
DOWNLOAD_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
    ),
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
}


class ObjectStorage(Protocol):
    """Durable key/value blob storage."""

    def put(self, key: str, data: bytes, content_type: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def public_url(self, key: str) -> str:
        ...


class S3ObjectStorage:
    """S3-compatible bucket storage."""

    def __init__(
        self,
        bucket: str,
        *,
        public_base_url: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client=None,
    ) -> None:
        self.bucket = bucket
        self.public_base_url = (public_base_url or f"https://{bucket}.s3.amazonaws.com").rstrip("/")
        self._client = client or boto3.client("s3", endpoint_url=endpoint_url)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=key)

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"


def transform_image(data: bytes, *, max_width: int = 800, quality: int = 80) -> bytes:
    """Trim transparent padding, cap the width and encode as WebP."""
    with Image.open(BytesIO(data)) as source:
        source.load()
        img = source
        if img.mode in ("P", "LA", "PA") or "transparency" in img.info:
            img = img.convert("RGBA")
        elif img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGB")

        if img.mode == "RGBA":
            bbox = img.getchannel("A").getbbox()
            if bbox:
                img = img.crop(bbox)

        if img.width > max_width:
            height = max(1, round(img.height * max_width / img.width))
            img = img.resize((max_width, height), Image.Resampling.LANCZOS)

        output = BytesIO()
        img.save(output, format="WEBP", quality=quality)
        return output.getvalue()


class AssetPipeline:
    """Idempotent image store keyed by product slug."""

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        prefix: str = "products",
        max_width: int = 800,
        quality: int = 80,
        timeout: float = 10.0,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.storage = storage
        self.prefix = prefix.strip("/")
        self.max_width = max_width
        self.quality = quality
        self.timeout = timeout
        self._http = http_client or httpx.Client(headers=DOWNLOAD_HEADERS, follow_redirects=True)

    def key_for(self, slug: str) -> str:
        return f"{self.prefix}/{slug}.webp" if self.prefix else f"{slug}.webp"

    def store(self, image_url: str, slug: str) -> str:
        """Process ``image_url`` and upload it under ``slug``; return its public URL.

        Raises
        ------
        AssetUploadFailure
            If any stage (download, transform, upload) fails
        """
        if not image_url:
            raise AssetUploadFailure(f"No image URL for {slug}")

        try:
            response = self._http.get(image_url, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AssetUploadFailure(f"Image download failed for {slug} ({image_url}): {exc}") from exc

        try:
            payload = transform_image(response.content, max_width=self.max_width, quality=self.quality)
        except (OSError, ValueError) as exc:
            raise AssetUploadFailure(f"Image transform failed for {slug}: {exc}") from exc

        key = self.key_for(slug)
        try:
            self.storage.put(key, payload, CONTENT_TYPE)
        except Exception as exc:
            raise AssetUploadFailure(f"Image upload failed for {slug}: {exc}") from exc

        LOGGER.info("Stored image for %s at %s (%d bytes)", slug, key, len(payload))
        return self.storage.public_url(key)

    def delete(self, slug: str) -> bool:
        """Remove the stored image; failures are logged, never raised."""
        key = self.key_for(slug)
        try:
            self.storage.delete(key)
        except Exception as exc:
            LOGGER.warning("Failed to delete image %s: %s", key, exc)
            return False
        LOGGER.info("Deleted image %s", key)
        return True

    def close(self) -> None:
        self._http.close()


def is_valid_image_reference(reference: Optional[str]) -> bool:
    """A stored image reference must be an absolute http(s) URL."""
    return bool(reference) and reference.startswith(("http://", "https://"))
