import logging
import time
from urllib.parse import quote

import requests

logger = logging.getLogger("ogp-service.fetcher")


class FetchError(Exception):
    pass


class FetchTimeoutError(FetchError):
    pass


class RetryExhaustedError(FetchError):
    def __init__(self, url: str, attempts: int, last_error: BaseException | None):
        super().__init__(f"Max retries exceeded for {url} after {attempts} attempt(s): {last_error}")
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


def fetch_with_timeout(
    url: str,
    timeout: float = 3.0,
    headers: dict | None = None,
    **request_kwargs,
) -> requests.Response:
    """Issue a single GET. Raises FetchTimeoutError if the server does not answer within `timeout` seconds."""
    try:
        return requests.get(
            url,
            timeout=timeout,
            headers=headers,
            allow_redirects=True,
            **request_kwargs,
        )
    except requests.Timeout as exc:
        raise FetchTimeoutError(f"Timed out after {timeout}s fetching {url}") from exc


def fetch_with_retry(
    url: str,
    max_retries: int = 2,
    headers: dict | None = None,
    timeout: float = 3.0,
    backoff_step: float = 0.2,
) -> str:
    """
    Fetch `url` and return the response body, trying up to `max_retries` times.
    Waits `attempt * backoff_step` seconds before each retry. Non-2xx responses
    count as failed attempts.
    """
    attempts = max(1, max_retries)
    last_error: BaseException | None = None

    for attempt in range(attempts):
        if attempt > 0:
            time.sleep(attempt * backoff_step)
        try:
            response = fetch_with_timeout(url, timeout=timeout, headers=headers)
            response.raise_for_status()
            return response.text
        except (FetchError, requests.RequestException) as exc:
            last_error = exc
            logger.info(f"Attempt {attempt + 1}/{attempts} failed for {url}: {exc}")

    raise RetryExhaustedError(url, attempts, last_error) from last_error


def build_proxy_url(template: str, url: str) -> str:
    # Same escaping as JavaScript's encodeURIComponent.
    encoded = quote(url, safe="!~*'()")
    if "{url}" in template:
        return template.replace("{url}", encoded, 1)
    return f"{template}{encoded}"
