"""
Cloudinary video concatenation.

Segments are uploaded from their provider URLs, then joined with a
fl_splice transformation; Cloudinary renders the spliced file when the
returned URL is first requested.
"""

import hashlib
import logging
import time
from typing import Optional

import httpx

from .config import CloudinarySettings
from .pipeline.errors import StitchError

logger = logging.getLogger(__name__)

MIN_TRIM_SECONDS = 0.1
MAX_TRIM_SECONDS = 5.0


def sign_params(params: dict, api_secret: str) -> str:
    """Cloudinary signature: sorted key=value pairs joined by & plus the secret, SHA-1."""
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


def _format_seconds(value: float) -> str:
    return f"{value:g}"


class CloudinaryStitcher:
    def __init__(self, settings: CloudinarySettings, http: Optional[httpx.Client] = None):
        self.settings = settings
        self.http = http or httpx.Client(timeout=settings.timeout)

    @property
    def upload_url(self) -> str:
        return f"https://api.cloudinary.com/v1_1/{self.settings.cloud_name}/video/upload"

    def upload_segment(self, public_id: str, source_url: str) -> str:
        timestamp = str(int(time.time()))
        params = {"public_id": public_id, "timestamp": timestamp}
        form = {
            "file": source_url,
            "public_id": public_id,
            "timestamp": timestamp,
            "api_key": self.settings.api_key,
            "signature": sign_params(params, self.settings.api_secret),
            "resource_type": "video",
        }
        logger.info(f"Uploading segment {public_id} to Cloudinary")
        response = self.http.post(self.upload_url, data=form)
        if response.status_code >= 400:
            raise StitchError(f"Cloudinary upload failed for {public_id} ({response.status_code}): {response.text[:300]}")
        uploaded = response.json().get("public_id")
        if not uploaded:
            raise StitchError(f"Cloudinary upload for {public_id} returned no public_id")
        return uploaded

    def splice_url(self, public_ids: list[str], trim_seconds: Optional[float] = None) -> str:
        base, rest = public_ids[0], public_ids[1:]
        transformations = []
        for public_id in rest:
            layer = f"fl_splice,l_video:{public_id.replace('/', ':')}"
            if trim_seconds:
                layer += f",so_{_format_seconds(trim_seconds)}"
            transformations.append(f"{layer}/fl_layer_apply")
        path = "/".join(transformations)
        return f"https://res.cloudinary.com/{self.settings.cloud_name}/video/upload/{path}/{base}.mp4"

    def concatenate(self, generation_id: str, segment_urls: list[str], trim_seconds: Optional[float] = None) -> str:
        """Upload every segment in order and return the spliced video URL."""
        if not self.settings.configured:
            raise StitchError("Cloudinary credentials not configured")
        if len(segment_urls) < 2:
            raise StitchError(f"Need at least 2 segments to stitch, got {len(segment_urls)}")
        if any(not url for url in segment_urls):
            raise StitchError("Every segment needs a video URL")
        if trim_seconds is not None and not MIN_TRIM_SECONDS <= trim_seconds <= MAX_TRIM_SECONDS:
            raise StitchError(f"Trim must be between {MIN_TRIM_SECONDS} and {MAX_TRIM_SECONDS} seconds")

        public_ids = []
        for index, url in enumerate(segment_urls):
            public_ids.append(self.upload_segment(f"video_{generation_id}_segment_{index}", url))

        final_url = self.splice_url(public_ids, trim_seconds)
        logger.info(f"Stitched {len(public_ids)} segments for {generation_id}: {final_url}")
        return final_url
