"""
CatalogHTTPClient: HTTP client for the external media catalog.

Wraps a ``requests.Session`` with per-request timeouts, automatic retries with
exponential backoff and classification of failures into the APIError family.

Error Taxonomy:
- TransientError: network issues, timeouts, 5xx (retried)
- QuotaError: 429 rate limiting (retried)
- AuthError: 401, 403
- NotFoundError: 404
- APIError: anything else, including undecodable JSON bodies
"""

import os
import time
import logging
from typing import Any, Dict, Optional

import requests

from nextup.errors import (
    APIError,
    APIErrorType,
    AuthError,
    NotFoundError,
    QuotaError,
    TransientError,
)

logger = logging.getLogger(__name__)

RETRYABLE_ERROR_TYPES = (APIErrorType.TRANSIENT, APIErrorType.QUOTA)


class CatalogHTTPClient:
    """
    GET-only JSON client with retry logic.

    Configuration via environment variables:
    - CATALOG_CLIENT_TIMEOUT: Timeout in seconds (default: 10.0)
    - CATALOG_CLIENT_MAX_RETRIES: Retries after the first attempt (default: 3)
    - CATALOG_CLIENT_BACKOFF_BASE: Base backoff delay in seconds (default: 0.5)
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout if timeout is not None else float(os.getenv("CATALOG_CLIENT_TIMEOUT", "10.0"))
        self.max_retries = max_retries if max_retries is not None else int(os.getenv("CATALOG_CLIENT_MAX_RETRIES", "3"))
        self.backoff_base = (
            backoff_base if backoff_base is not None else float(os.getenv("CATALOG_CLIENT_BACKOFF_BASE", "0.5"))
        )
        self.session = session or requests.Session()

        logger.info(
            f"CatalogHTTPClient initialized: timeout={self.timeout}s, "
            f"max_retries={self.max_retries}, backoff_base={self.backoff_base}s"
        )

    def _classify_status(self, status: int) -> APIErrorType:
        if status in (401, 403):
            return APIErrorType.AUTH
        if status == 404:
            return APIErrorType.NOT_FOUND
        if status == 429:
            return APIErrorType.QUOTA
        if 500 <= status < 600:
            return APIErrorType.TRANSIENT
        return APIErrorType.UNKNOWN

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff: 0.5s, 1s, 2s with the default base."""
        return self.backoff_base * (2 ** attempt)

    def _raise_classified_error(self, error_type: APIErrorType, message: str,
                                status_code: Optional[int] = None,
                                original_error: Optional[Exception] = None):
        if error_type == APIErrorType.AUTH:
            raise AuthError(message, status_code)
        if error_type == APIErrorType.QUOTA:
            raise QuotaError(message, status_code)
        if error_type == APIErrorType.NOT_FOUND:
            raise NotFoundError(message, status_code)
        if error_type == APIErrorType.TRANSIENT:
            raise TransientError(message, status_code, original_error)
        raise APIError(message, error_type, status_code, original_error)

    def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        api_name: str = "catalog",
    ) -> Dict[str, Any]:
        """
        GET ``url`` and return the decoded JSON body.

        Transient and quota failures are retried up to ``max_retries`` times;
        other failures raise immediately.

        Raises:
            AuthError, QuotaError, NotFoundError, TransientError, APIError
        """
        log_context = f"[{api_name}]"

        for attempt in range(self.max_retries + 1):
            status_code = None
            original_error = None
            try:
                logger.debug(f"{log_context} Request attempt {attempt + 1}/{self.max_retries + 1}: GET {url}")
                response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                error_type = APIErrorType.TRANSIENT
                original_error = e
                error_msg = f"{api_name} request failed: {type(e).__name__}: {e}"
                logger.warning(f"{log_context} Request exception: {type(e).__name__}: {e}")
            else:
                if response.ok:
                    if attempt > 0:
                        logger.info(f"{log_context} Request succeeded after {attempt + 1} attempt(s)")
                    try:
                        return response.json()
                    except ValueError as e:
                        raise APIError(
                            f"{api_name} returned an invalid JSON body",
                            APIErrorType.UNKNOWN,
                            response.status_code,
                            e,
                        ) from e

                status_code = response.status_code
                error_type = self._classify_status(status_code)
                error_msg = f"{api_name} request failed with status {status_code}: {response.text[:200]}"
                logger.warning(f"{log_context} {error_msg}")

            if error_type in RETRYABLE_ERROR_TYPES and attempt < self.max_retries:
                backoff_delay = self._calculate_backoff(attempt)
                logger.info(
                    f"{log_context} Retrying after {backoff_delay}s "
                    f"(attempt {attempt + 1}/{self.max_retries}, error_type={error_type.value})"
                )
                time.sleep(backoff_delay)
                continue

            if error_type in RETRYABLE_ERROR_TYPES:
                logger.error(f"{log_context} Giving up after {attempt + 1} attempts")
            self._raise_classified_error(error_type, error_msg, status_code, original_error)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
