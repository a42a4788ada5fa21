"""
Image hosting on Cloudinary.
"""

import logging
import os
from typing import BinaryIO, Dict

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader

logger = logging.getLogger(__name__)

CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET")

UPLOAD_FOLDER = "bakehub/uploads"
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_FILES = 10

if CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET:
    cloudinary.config(
        cloud_name=CLOUDINARY_CLOUD_NAME,
        api_key=CLOUDINARY_API_KEY,
        api_secret=CLOUDINARY_API_SECRET,
        secure=True,
    )


class UploadError(Exception):
    pass


def is_configured() -> bool:
    return bool(CLOUDINARY_CLOUD_NAME and CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET)


def upload_image(file: BinaryIO, folder: str = UPLOAD_FOLDER) -> Dict[str, str]:
    """Upload one image and return {url, public_id}."""
    if not is_configured():
        raise UploadError("Image upload not configured. Set CLOUDINARY_CLOUD_NAME, CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET.")
    try:
        result = cloudinary.uploader.upload(
            file,
            folder=folder,
            resource_type="image",
            quality="auto",
            fetch_format="auto",
        )
    except cloudinary.exceptions.Error as e:
        logger.error("Cloudinary upload failed: %s", e)
        raise UploadError(str(e)) from e
    url = result.get("secure_url") or result.get("url")
    if not url:
        raise UploadError("Upload succeeded but URL not found")
    return {"url": url, "public_id": result.get("public_id", "")}
