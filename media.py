"""Image uploads to Cloudinary."""
import os
import logging
from typing import Optional, Tuple
from urllib.parse import urlparse

import cloudinary
import cloudinary.uploader
from cloudinary.exceptions import Error as CloudinaryError

logger = logging.getLogger(__name__)


class MediaError(Exception):
    pass


def credentials() -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """(cloud_name, api_key, api_secret) from CLOUDINARY_URL or the discrete variables."""
    url = os.getenv("CLOUDINARY_URL")
    if url:
        parsed = urlparse(url)
        return parsed.hostname, parsed.username, parsed.password
    return (
        os.getenv("CLOUDINARY_CLOUD_NAME"),
        os.getenv("CLOUDINARY_API_KEY"),
        os.getenv("CLOUDINARY_API_SECRET"),
    )


def configure() -> bool:
    """Point the SDK at the configured account. False when credentials are missing."""
    cloud_name, api_key, api_secret = credentials()
    if not (cloud_name and api_key and api_secret):
        return False
    cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)
    return True


def upload_image(file, folder: str = "products") -> str:
    """Upload a file object and return its https URL."""
    if not configure():
        raise MediaError("Cloudinary is not configured")
    try:
        result = cloudinary.uploader.upload(file, folder=folder, resource_type="image")
    except CloudinaryError as e:
        logger.error("Cloudinary upload to %s failed: %s", folder, e)
        raise MediaError("Image upload failed")
    logger.info("Uploaded image to %s", result.get("public_id"))
    return result["secure_url"]
