"""
CRM REST API client for case data synchronization.

Provides a paginated, rate-limited interface to the practice-management API:
- Fetching pages of contacts, matters and tasks with an optional
  modified-since filter
- Exponential backoff retry for rate limits, server errors and timeouts
- A per-client minimum interval between requests
- One forced token refresh and re-send when the CRM rejects the bearer token
"""

import logging
import threading
import time
from collections.abc import Generator
from datetime import datetime, timezone
from typing import Any, Optional, Union

import requests

from crm_sync import __version__
from crm_sync.auth.token_manager import AuthenticationRequired, TokenManager
from crm_sync.sync.mapping import EntityType

DEFAULT_BASE_URL = "https://app.practicepanther.com/api/v2"

# CRM ceiling for records per page
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 100

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 0.5  # seconds
DEFAULT_MAX_RETRY_DELAY = 30.0  # seconds

# Minimum spacing between requests from one client (in seconds)
DEFAULT_MIN_REQUEST_INTERVAL = 0.1

# Timeout for a single HTTP request (in seconds)
DEFAULT_TIMEOUT = 30.0

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised when a CRM request fails and should not be retried."""

    pass


class TransientFetchError(FetchError):
    """Raised when a retryable CRM failure persists after all retries."""

    pass


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _format_modified_since(value: Union[datetime, str]) -> str:
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class CRMClient:
    """
    Client for the CRM's REST collections.

    Cursors are 1-based page numbers. fetch_page() returns the page's records
    and the cursor of the next page, or None on the last page.

    Usage:
        client = CRMClient(token_manager)

        cursor = None
        while True:
            records, cursor = client.fetch_page(EntityType.MATTERS, cursor)
            ...
            if cursor is None:
                break

        # Or iterate all pages
        for records in client.iter_pages(EntityType.CONTACTS):
            ...
    """

    def __init__(
        self,
        token_manager: TokenManager,
        base_url: str = DEFAULT_BASE_URL,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY,
        max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY,
        min_request_interval: float = DEFAULT_MIN_REQUEST_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the CRM client.

        Args:
            token_manager: Source of bearer tokens
            base_url: API root, e.g. https://app.practicepanther.com/api/v2
            page_size: Default records per page (clamped to MAX_PAGE_SIZE)
            max_retries: Maximum retries for retryable failures
            initial_retry_delay: First backoff delay in seconds
            max_retry_delay: Ceiling for any single backoff delay in seconds
            min_request_interval: Minimum seconds between requests
            timeout: Per-request timeout in seconds
            session: Optional requests session (tests inject a mock)
        """
        self.token_manager = token_manager
        self.base_url = base_url.rstrip("/")
        self.page_size = self._clamp_page_size(page_size)
        self.max_retries = max_retries
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.min_request_interval = min_request_interval
        self.timeout = timeout
        self.session = session or requests.Session()

        self._rate_lock = threading.Lock()
        self._last_request_at: Optional[float] = None
        self._local = threading.local()

    @staticmethod
    def _clamp_page_size(page_size: Optional[int]) -> int:
        if page_size is None:
            return DEFAULT_PAGE_SIZE
        return max(1, min(int(page_size), MAX_PAGE_SIZE))

    @property
    def last_retry_count(self) -> int:
        """Retries used by the calling thread's most recent request."""
        return getattr(self._local, "retry_count", 0)

    def close(self) -> None:
        self.session.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _throttle(self) -> None:
        """Wait until min_request_interval has passed since the previous request."""
        with self._rate_lock:
            now = time.monotonic()
            if self._last_request_at is not None and self.min_request_interval > 0:
                wait = self.min_request_interval - (now - self._last_request_at)
                if wait > 0:
                    time.sleep(wait)
                    now = time.monotonic()
            self._last_request_at = now

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": f"crm-sync/{__version__}",
        }

    def _send_with_retry(
        self, url: str, params: dict[str, Any], token: str, operation_name: str
    ) -> requests.Response:
        """
        Send a GET, retrying rate limits, server errors and network failures.

        Returns:
            The first response with a non-retryable status

        Raises:
            TransientFetchError: If retries are exhausted
        """
        delay = self.initial_retry_delay

        for attempt in range(self.max_retries + 1):
            self._throttle()
            try:
                response = self.session.get(
                    url,
                    params=params,
                    headers=self._headers(token),
                    timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                reason = f"network error ({e.__class__.__name__})"
                response = None
                last_error: Optional[Exception] = e
            else:
                if not _is_retryable_status(response.status_code):
                    return response
                reason = f"HTTP {response.status_code}"
                last_error = None

            if attempt >= self.max_retries:
                raise TransientFetchError(
                    f"{operation_name} failed with {reason} "
                    f"after {self.max_retries} retries"
                ) from last_error

            if response is not None and response.status_code == 429:
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                if retry_after is not None:
                    delay = max(delay, retry_after)
            delay = min(delay, self.max_retry_delay)

            logger.warning(
                f"{operation_name} {reason}, retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{self.max_retries})"
            )
            time.sleep(delay)
            self._local.retry_count = self.last_retry_count + 1
            delay = min(delay * 2, self.max_retry_delay)

        # Loop always returns or raises
        raise TransientFetchError(f"{operation_name} failed after all retries")

    def _get(
        self, path: str, params: dict[str, Any], operation_name: str
    ) -> requests.Response:
        """
        Authenticated GET with one forced refresh on 401.

        Raises:
            AuthenticationRequired: If the CRM rejects a freshly refreshed token
            TransientFetchError: If retries are exhausted
        """
        self._local.retry_count = 0
        url = f"{self.base_url}/{path.lstrip('/')}"

        token = self.token_manager.get_valid_token()
        response = self._send_with_retry(url, params, token, operation_name)

        if response.status_code == 401:
            logger.warning(f"{operation_name} got 401, refreshing token and retrying once")
            token = self.token_manager.get_valid_token(
                force_refresh=True, stale_token=token
            )
            response = self._send_with_retry(url, params, token, operation_name)
            if response.status_code == 401:
                raise AuthenticationRequired(
                    f"{operation_name} rejected with 401 after token refresh"
                )

        return response

    @staticmethod
    def _json(response: requests.Response, operation_name: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"{operation_name} returned a non-JSON body") from e

    # =========================================================================
    # Collections
    # =========================================================================

    def fetch_page(
        self,
        entity_type: Union[EntityType, str],
        cursor: Optional[int] = None,
        page_size: Optional[int] = None,
        modified_since: Optional[Union[datetime, str]] = None,
    ) -> tuple[list[dict[str, Any]], Optional[int]]:
        """
        Fetch one page of an entity collection.

        Args:
            entity_type: Collection to read
            cursor: Page number from a previous call; None for the first page
            page_size: Records per page, clamped to [1, MAX_PAGE_SIZE]
            modified_since: Only return records modified after this time

        Returns:
            Tuple of (records, next cursor or None on the last page)

        Raises:
            FetchError: For non-retryable HTTP errors or malformed responses
            TransientFetchError: If retries are exhausted
            AuthenticationRequired: If the CRM keeps rejecting the token
        """
        entity = EntityType.parse(entity_type)
        page = int(cursor) if cursor else 1
        per_page = self._clamp_page_size(page_size) if page_size else self.page_size

        params: dict[str, Any] = {"page": page, "per_page": per_page}
        if modified_since is not None:
            params["modified_since"] = _format_modified_since(modified_since)

        operation_name = f"fetch {entity.value} page {page}"
        logger.debug(f"Fetching {entity.value} page {page} (per_page={per_page})")

        response = self._get(entity.endpoint, params, operation_name)
        if response.status_code >= 400:
            raise FetchError(
                f"{operation_name} failed with HTTP {response.status_code}: "
                f"{response.text[:200]}"
            )

        body = self._json(response, operation_name)

        if isinstance(body, list):
            records = body
            has_more = len(records) >= per_page
        elif isinstance(body, dict) and isinstance(body.get("data"), list):
            records = body["data"]
            if "has_more" in body:
                has_more = bool(body["has_more"])
            elif body.get("total_count") is not None:
                has_more = page * per_page < int(body["total_count"])
            else:
                has_more = len(records) >= per_page
        else:
            raise FetchError(f"{operation_name} returned an unexpected response shape")

        # An empty page ends pagination even if the CRM claims more
        next_cursor = page + 1 if has_more and records else None
        return records, next_cursor

    def iter_pages(
        self,
        entity_type: Union[EntityType, str],
        page_size: Optional[int] = None,
        modified_since: Optional[Union[datetime, str]] = None,
    ) -> Generator[list[dict[str, Any]], None, None]:
        """Yield every page of a collection in order."""
        cursor: Optional[int] = None
        while True:
            records, cursor = self.fetch_page(
                entity_type, cursor, page_size=page_size, modified_since=modified_since
            )
            yield records
            if cursor is None:
                return

    def get_record(
        self, entity_type: Union[EntityType, str], external_id: str
    ) -> Optional[dict[str, Any]]:
        """
        Fetch a single record by CRM id.

        Returns:
            The record, or None if the CRM answered 404
        """
        entity = EntityType.parse(entity_type)
        operation_name = f"get {entity.value} {external_id}"

        response = self._get(f"{entity.endpoint}/{external_id}", {}, operation_name)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise FetchError(
                f"{operation_name} failed with HTTP {response.status_code}"
            )

        body = self._json(response, operation_name)
        if not isinstance(body, dict):
            raise FetchError(f"{operation_name} returned an unexpected response shape")
        return body
