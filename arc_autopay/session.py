"""HTTP session management for Circle's Iris attestation API.

The :py:class:`IrisSession` carries the API URL so that the attestation
functions do not need a separate ``api_base_url`` argument.

Requests are rate limited client-side. Transport-level retries are disabled:
the attestation poller owns the retry budget, so one poll attempt is exactly
one HTTP request.
"""

import logging

from requests import Session
from requests_ratelimiter import LimiterAdapter

from arc_autopay.cctp.constants import IRIS_API_SANDBOX_URL

logger = logging.getLogger(__name__)

#: Default rate limit for Iris API requests per second.
#:
#: Iris allows 35 requests/second. Exceeding this triggers a 5-minute block (HTTP 429).
DEFAULT_REQUESTS_PER_SECOND = 10.0

#: Default per-request timeout in seconds
DEFAULT_REQUEST_TIMEOUT = 30.0


class IrisSession(Session):
    """A :py:class:`requests.Session` subclass that carries the Iris API URL.

    Use :py:func:`create_iris_session` to create instances.
    """

    #: Iris API base URL (e.g. ``https://iris-api-sandbox.circle.com``).
    api_url: str

    #: Timeout applied to every request made through the attestation helpers
    request_timeout: float

    def __init__(self, api_url: str = IRIS_API_SANDBOX_URL, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        super().__init__()
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout

    def __repr__(self) -> str:
        return f"<IrisSession api_url={self.api_url!r}>"


def create_iris_session(
    api_url: str = IRIS_API_SANDBOX_URL,
    requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    pool_maxsize: int = 8,
) -> IrisSession:
    """Create a :py:class:`IrisSession` configured for the Iris API.

    Example::

        from arc_autopay.session import create_iris_session
        from arc_autopay.cctp.constants import IRIS_API_BASE_URL

        # Testnets (default)
        session = create_iris_session()

        # Mainnet
        session = create_iris_session(api_url=IRIS_API_BASE_URL)

    :param api_url:
        Iris API base URL. Defaults to the sandbox used by testnets.
    :param requests_per_second:
        Maximum requests per second to avoid the 5-minute 429 block.
    :param request_timeout:
        Per-request timeout in seconds.
    :param pool_maxsize:
        Maximum number of connections to keep in the connection pool.
    :return:
        Configured :py:class:`IrisSession` with rate limiting
    """
    session = IrisSession(api_url=api_url, request_timeout=request_timeout)

    adapter = LimiterAdapter(
        per_second=requests_per_second,
        max_retries=0,
        pool_connections=pool_maxsize,
        pool_maxsize=pool_maxsize,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
