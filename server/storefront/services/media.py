"""
Cloudinary image CDN: signed uploads, deletes and delivery URLs.
"""

import hashlib
import logging
import time
from typing import Dict, Optional

import httpx

from ..settings import settings


logger = logging.getLogger(__name__)

DEFAULT_TRANSFORMATION = "w_auto,f_auto,q_auto"
THUMBNAIL_TRANSFORMATION = "w_300,h_300,c_fill,f_auto,q_auto"


class MediaUploadError(Exception):
    pass


def is_configured() -> bool:
    return bool(
        settings.cloudinary_cloud_name
        and settings.cloudinary_api_key
        and settings.cloudinary_api_secret
    )


def sign_params(params: Dict[str, object], api_secret: str) -> str:
    """
    SHA-1 over the sorted, &-joined k=v pairs followed by the API secret.

    Empty values and the file/api_key/resource_type fields are not signed.
    """
    excluded = {"file", "api_key", "resource_type", "cloud_name", "signature"}
    to_sign = "&".join(
        f"{k}={params[k]}"
        for k in sorted(params)
        if k not in excluded and params[k] not in (None, "")
    )
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def _signed(params: Dict[str, object]) -> Dict[str, object]:
    params = {k: v for k, v in params.items() if v not in (None, "")}
    params["timestamp"] = int(time.time())
    params["signature"] = sign_params(params, settings.cloudinary_api_secret)
    params["api_key"] = settings.cloudinary_api_key
    return params


def _endpoint(action: str) -> str:
    return f"{settings.cloudinary_api_url}/{settings.cloudinary_cloud_name}/image/{action}"


async def upload_image(
    content: bytes,
    filename: str,
    content_type: str,
    folder: Optional[str] = None,
    public_id: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Upload an image and return its delivery metadata."""
    if not is_configured():
        raise MediaUploadError("Image CDN is not configured")

    data = _signed({"folder": folder or settings.upload_folder, "public_id": public_id})
    files = {"file": (filename, content, content_type)}
    async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
        try:
            response = await client.post(_endpoint("upload"), data=data, files=files)
        except httpx.HTTPError as e:
            logger.error(f"[media] Upload request failed: {e}")
            raise MediaUploadError("Image CDN unavailable") from e

    if response.status_code >= 400:
        logger.warning(f"[media] Upload rejected ({response.status_code}): {response.text[:200]}")
        raise MediaUploadError("Failed to upload image")

    result = response.json()
    logger.info(f"[media] Uploaded {result.get('public_id')} ({result.get('bytes')} bytes)")
    return {
        "secure_url": result["secure_url"],
        "public_id": result["public_id"],
        "width": result.get("width"),
        "height": result.get("height"),
        "format": result.get("format"),
        "bytes": result.get("bytes"),
    }


async def delete_image(
    public_id: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Delete an uploaded image. Returns False when the CDN did not find it."""
    if not is_configured():
        raise MediaUploadError("Image CDN is not configured")

    async with httpx.AsyncClient(timeout=15.0, transport=transport) as client:
        try:
            response = await client.post(_endpoint("destroy"), data=_signed({"public_id": public_id}))
        except httpx.HTTPError as e:
            logger.error(f"[media] Delete request failed: {e}")
            raise MediaUploadError("Image CDN unavailable") from e

    if response.status_code >= 400:
        raise MediaUploadError("Failed to delete image")
    return response.json().get("result") == "ok"


def optimized_url(url: Optional[str], transformation: str = DEFAULT_TRANSFORMATION) -> Optional[str]:
    """
    Rewrite a Cloudinary delivery URL with a transformation.
    Non-Cloudinary URLs are returned unchanged.
    """
    if not url or "cloudinary.com" not in url:
        return url
    parts = url.split("/")
    host_index = next((i for i, p in enumerate(parts) if "cloudinary.com" in p), -1)
    if host_index == -1 or host_index + 1 >= len(parts):
        return url
    cloud_name = parts[host_index + 1]
    try:
        upload_index = parts.index("upload", host_index)
    except ValueError:
        return url
    tail = parts[upload_index + 1:]
    # drop an existing version segment (v123456)
    if tail and tail[0].startswith("v") and tail[0][1:].isdigit():
        tail = tail[1:]
    public_id = "/".join(tail).rsplit(".", 1)[0]
    return f"https://res.cloudinary.com/{cloud_name}/image/upload/{transformation}/{public_id}"


def thumbnail_url(url: Optional[str], width: int = 300) -> Optional[str]:
    return optimized_url(url, f"w_{width},c_scale")


def responsive_urls(url: str) -> dict:
    return {
        "thumbnail": thumbnail_url(url, 150),
        "small": thumbnail_url(url, 300),
        "medium": thumbnail_url(url, 600),
        "large": thumbnail_url(url, 1200),
        "original": url,
    }
