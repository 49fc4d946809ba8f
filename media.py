"""
Image uploads (deposit proofs, loan receipts, chat images) through Cloudinary's
unsigned upload endpoint.
"""
import logging
import os

import requests

logger = logging.getLogger(__name__)

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "dyprdh3rs")
CLOUDINARY_UPLOAD_PRESET = os.getenv("CLOUDINARY_UPLOAD_PRESET", "money-saving")
UPLOAD_TIMEOUT = int(os.getenv("MEDIA_UPLOAD_TIMEOUT", "30"))


class MediaUploadError(RuntimeError):
    pass


def upload_url() -> str:
    return f"https://api.cloudinary.com/v1_1/{CLOUDINARY_CLOUD_NAME}/image/upload"


def upload_image(filename: str, content: bytes, content_type: str) -> str:
    """Upload an image and return its secure URL."""
    if not (content_type or "").startswith("image/"):
        raise MediaUploadError("Please select an image file")

    try:
        response = requests.post(
            upload_url(),
            files={"file": (filename, content, content_type)},
            data={"upload_preset": CLOUDINARY_UPLOAD_PRESET},
            timeout=UPLOAD_TIMEOUT,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("Error uploading image %s: %s", filename, exc)
        raise MediaUploadError(f"Image upload failed: {exc}") from exc

    secure_url = payload.get("secure_url")
    if not secure_url:
        raise MediaUploadError("Image upload failed: no secure_url in response")
    logger.info("Uploaded %s to %s", filename, secure_url)
    return secure_url
