"""HTTP access to registries and git hosts, with timeouts and bounded retries."""

from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import requests
from requests import Session

from .config import get_settings
from .errors import PrivateSourceAuthenticationFailure, PrivateSourceTimedOut

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .config import Settings

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)


class HttpClient:
    """A thin wrapper around a `requests.Session`.

    Every request has a connect and a read timeout. Connection errors and timeouts are retried a bounded number of
    times with a jittered backoff; nothing else is retried. Authentication failures surface as
    `PrivateSourceAuthenticationFailure`, and running out of retries on a timeout as `PrivateSourceTimedOut`.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session: Session | None = None,
        retries: int | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Settings providing timeouts and the retry count (process-wide settings by default)
            session: Session to use, e.g. one with extra adapters or a mocked one
            retries: Override of the configured number of retries

        """
        settings = settings or get_settings()
        self.session: Session = session or Session()
        self.timeout: tuple[float, float] = (settings.http_connect_timeout, settings.http_read_timeout)
        self.retries: int = settings.http_retries if retries is None else retries

    @staticmethod
    def _backoff(attempt: int) -> float:
        return min(2**attempt * 0.5, 4.0) + random.uniform(0.0, 0.9)  # noqa: S311

    def request(  # noqa: PLR0913
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        auth: tuple[str, str] | None = None,
        source: str | None = None,
        raise_on_auth_failure: bool = True,
        **kwargs: Any,  # noqa: ANN401
    ) -> requests.Response:
        """Send a request, retrying transient network failures.

        Args:
            method: HTTP method
            url: URL to request
            headers: Extra headers
            auth: Basic auth credentials
            source: Name of the source used in error messages (defaults to the URL's host)
            raise_on_auth_failure: Whether a 401/403 raises `PrivateSourceAuthenticationFailure`
            **kwargs: Passed to `requests.Session.request`

        Returns:
            The response, whatever its status (apart from authentication failures)

        """
        source = source or urlparse(url).netloc or url
        attempt = 0
        while True:
            try:
                response = self.session.request(
                    method,
                    url,
                    headers=dict(headers or {}),
                    auth=auth,
                    timeout=self.timeout,
                    **kwargs,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= self.retries:
                    logger.warning("Giving up on %s after %d attempts: %s", url, attempt + 1, e)
                    if isinstance(e, requests.Timeout):
                        raise PrivateSourceTimedOut(source) from e
                    raise
                delay = self._backoff(attempt)
                logger.debug("Request to %s failed (%s), retrying in %.2fs", url, e, delay)
                time.sleep(delay)
                attempt += 1
                continue
            if raise_on_auth_failure and response.status_code in AUTH_FAILURE_STATUSES:
                raise PrivateSourceAuthenticationFailure(source)
            return response

    def get(self, url: str, **kwargs: Any) -> requests.Response:  # noqa: ANN401
        """Send a GET request."""
        return self.request("GET", url, **kwargs)

    def head(self, url: str, **kwargs: Any) -> requests.Response:  # noqa: ANN401
        """Send a HEAD request."""
        return self.request("HEAD", url, **kwargs)

    def get_json(self, url: str, **kwargs: Any) -> Any:  # noqa: ANN401
        """GET a JSON document, raising `requests.HTTPError` for any non-success status."""
        response = self.get(url, **kwargs)
        response.raise_for_status()
        return response.json()
