"""
Image source integration.

Resolves a job's image keys to bytes. Two upload methods:
- dropbox: keys are Dropbox paths, downloaded with the job's short-lived
  access token through the content API
- staged: keys are URLs of images already uploaded to staging storage

Failures are per image and never include the access token.
"""

import json
import mimetypes
from typing import Optional

import requests
import structlog
from pydantic import BaseModel

from config.pairing import RetryPolicy
from exceptions import ImageFetchError
from models.pairing_job import UploadMethod
from utils.retry import call_with_retry

logger = structlog.get_logger(__name__)

DROPBOX_DOWNLOAD_URL = "https://content.dropboxapi.com/2/files/download"
REQUEST_TIMEOUT_SECONDS = 30
MAX_IMAGE_BYTES = 20 * 1024 * 1024

TRANSIENT_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


class FetchedImage(BaseModel):
    """Raw image bytes for one key."""

    key: str
    content: bytes
    media_type: str = "image/jpeg"


def guess_media_type(key: str, header: Optional[str] = None) -> str:
    """Media type from the response header, else from the file extension."""
    if header and header.startswith("image/"):
        return header.split(";")[0].strip()
    guessed, _ = mimetypes.guess_type(key.split("?")[0])
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


class ImageSource:
    """
    Fetch source images for one job.

    Example:
        source = ImageSource(UploadMethod.DROPBOX, access_token=job.access_token)
        image = source.fetch("/Photos/batch1/IMG_0001.jpg")
    """

    def __init__(
        self,
        upload_method: UploadMethod,
        access_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        if upload_method == UploadMethod.DROPBOX and not access_token:
            raise ImageFetchError("-", "Dropbox uploads need an access token")
        self.upload_method = upload_method
        self._access_token = access_token
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy(max_attempts=2, base_delay_seconds=0.5)

    def _download_dropbox(self, key: str) -> requests.Response:
        return self.session.post(
            DROPBOX_DOWNLOAD_URL,
            headers={
                "Authorization": f"Bearer {self._access_token}",
                "Dropbox-API-Arg": json.dumps({"path": key}),
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    def _download_staged(self, key: str) -> requests.Response:
        return self.session.get(key, timeout=REQUEST_TIMEOUT_SECONDS)

    def _scrub(self, text: str) -> str:
        if self._access_token:
            return text.replace(self._access_token, "***")
        return text

    def fetch(self, key: str) -> FetchedImage:
        """
        Download one image.

        Args:
            key: Dropbox path or staged URL

        Returns:
            FetchedImage

        Raises:
            ImageFetchError: Network failure after retries, HTTP error,
                empty or oversized body
        """
        download = (
            self._download_dropbox
            if self.upload_method == UploadMethod.DROPBOX
            else self._download_staged
        )

        try:
            response = call_with_retry(
                lambda: download(key),
                self.retry,
                retry_on=TRANSIENT_ERRORS,
                operation="image_fetch",
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            message = self._scrub(str(e))
            logger.error("image_fetch_failed", image_key=key, error=message)
            raise ImageFetchError(key, message)

        content = response.content
        if not content:
            raise ImageFetchError(key, "empty response body")
        if len(content) > MAX_IMAGE_BYTES:
            raise ImageFetchError(key, f"image too large ({len(content)} bytes)")

        media_type = guess_media_type(key, response.headers.get("Content-Type"))
        logger.debug("image_fetched", image_key=key, size=len(content), media_type=media_type)
        return FetchedImage(key=key, content=content, media_type=media_type)

    def fetch_many(self, keys: list[str]) -> tuple[list[FetchedImage], dict[str, str]]:
        """
        Download several images, collecting failures instead of stopping.

        Returns:
            (fetched images in key order, {key: error message} for failures)
        """
        fetched: list[FetchedImage] = []
        failures: dict[str, str] = {}
        for key in keys:
            try:
                fetched.append(self.fetch(key))
            except ImageFetchError as e:
                failures[key] = e.message
        return fetched, failures
