import time
import random
import logging
from typing import Optional

import requests

from .config import KieSettings

logger = logging.getLogger(__name__)

# ── Retry configuration (status reads only) ─────────────────────────────────
JITTER_MAX = 1.0        # random jitter 0–1s added to each delay
RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class KieResponse:
    """Status code, raw text and parsed JSON body (if any) of one Kie.ai call."""

    def __init__(self, status_code: int, text: str, body: Optional[dict]):
        self.status_code = status_code
        self.text = text
        self.body = body if isinstance(body, dict) else {}

    @property
    def ok(self) -> bool:
        """2xx and, when Kie.ai includes one, a body code of 200 or 0."""
        if not 200 <= self.status_code < 300:
            return False
        code = self.body.get("code")
        return code in (None, 0, 200)

    @property
    def error_status(self) -> int:
        """HTTP status, or the body code when Kie.ai reports an error inside a 200."""
        if not 200 <= self.status_code < 300:
            return self.status_code
        code = self.body.get("code")
        return code if isinstance(code, int) else self.status_code

    @property
    def error_text(self) -> str:
        if self.body.get("msg") and 200 <= self.status_code < 300:
            return str(self.body.get("msg"))
        return self.text


def extract_task_id(body: dict) -> Optional[str]:
    data = body.get("data")
    if isinstance(data, dict):
        task_id = data.get("taskId") or data.get("task_id")
        if task_id:
            return str(task_id)
    task_id = body.get("taskId") or body.get("task_id")
    return str(task_id) if task_id else None


class KieClient:
    """
    HTTP client for the Kie.ai API.

    submit() makes exactly one attempt: a failed generate/extend is handed
    back to the caller to classify, since retrying there belongs to the
    router's fallback. get() backs off on 429 / 5xx because reading a
    task status twice is harmless.
    """

    def __init__(self, settings: KieSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }

    def url(self, path: str) -> str:
        return f"{self.settings.api_base.rstrip('/')}/{path.lstrip('/')}"

    @staticmethod
    def _wrap(response: requests.Response) -> KieResponse:
        try:
            body = response.json()
        except ValueError:
            body = None
        return KieResponse(response.status_code, response.text or "", body)

    def submit(self, path: str, payload: dict) -> KieResponse:
        url = self.url(path)
        logger.info(f"Kie.ai POST {url}: model={payload.get('model')}")
        response = self.session.request(
            "POST", url, headers=self._headers(), json=payload, timeout=self.settings.timeout
        )
        return self._wrap(response)

    def get(self, path: str, params: dict) -> KieResponse:
        """
        GET with exponential backoff on retryable statuses.

        Uses: base_delay * 2^attempt + random jitter, honouring Retry-After.
        """
        url = self.url(path)
        max_retries = self.settings.poll_max_retries

        for attempt in range(max_retries + 1):
            try:
                response = self.session.request(
                    "GET", url, headers=self._headers(), params=params, timeout=self.settings.timeout
                )
            except requests.exceptions.RequestException as e:
                if attempt >= max_retries:
                    raise
                delay = self.settings.poll_base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
                logger.warning(
                    f"Kie.ai request error on attempt {attempt + 1}/{max_retries + 1}: {e} "
                    f"- retrying in {delay:.1f}s"
                )
                time.sleep(delay)
                continue

            if response.status_code not in RETRYABLE_STATUS_CODES or attempt >= max_retries:
                return self._wrap(response)

            retry_after = response.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                delay = int(retry_after)
            else:
                delay = self.settings.poll_base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)
            logger.warning(
                f"Kie.ai {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
                f"- retrying in {delay:.1f}s (url={url})"
            )
            time.sleep(delay)

        raise RuntimeError(f"Request to {url} failed after {max_retries + 1} attempts")
