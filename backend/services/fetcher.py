"""
Upstream fetching for the media proxy.

Redirects are followed by hand so that every hop goes back through the URL
validator. The connect timeout only covers the time until final response
headers arrive; once the body is streaming, the idle timeout takes over.
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, Dict, Optional
from urllib.parse import urljoin

import httpx

from core.config import CONNECT_TIMEOUT_SECONDS, IDLE_TIMEOUT_SECONDS, MAX_REDIRECTS
from core.errors import InvalidRedirectError, UpstreamError, ValidationError
from core.security import is_url_allowed

logger = logging.getLogger(__name__)


def create_proxy_client() -> httpx.AsyncClient:
    """Create the shared HTTP client used for upstream fetches."""
    return httpx.AsyncClient(
        follow_redirects=False,
        # Connect/header and body idle deadlines are enforced by us, not httpx
        timeout=httpx.Timeout(connect=CONNECT_TIMEOUT_SECONDS, read=None, write=10.0, pool=None),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )


def is_redirect_status(status_code: int) -> bool:
    return 300 <= status_code < 400


async def fetch_with_redirects(
    client: httpx.AsyncClient,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    max_redirects: int = MAX_REDIRECTS,
    connect_timeout: Optional[float] = CONNECT_TIMEOUT_SECONDS,
    url_validator: Callable[[str], bool] = is_url_allowed,
) -> httpx.Response:
    """
    GET a URL as a stream, following redirects manually.

    Every redirect target is resolved against the current URL and
    re-validated. Returns the first non-3xx response with its body still
    unread; the caller owns it and must close it.

    Raises:
        UpstreamError: transport failure, connect timeout, missing Location,
            or too many redirects.
        ValidationError: the starting URL cannot be turned into a request.
        InvalidRedirectError: redirect target is unparseable or disallowed.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + connect_timeout if connect_timeout else None
    current_url = url
    redirects = 0

    while True:
        remaining = None if deadline is None else max(deadline - loop.time(), 0.0)
        try:
            request = client.build_request("GET", current_url, headers=headers)
            response = await asyncio.wait_for(client.send(request, stream=True), remaining)
        except httpx.InvalidURL:
            if redirects:
                raise InvalidRedirectError("Invalid upstream redirect URL")
            raise ValidationError("Invalid upstream URL")
        except asyncio.TimeoutError:
            raise UpstreamError("Upstream fetch failed: connect timeout")
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream fetch failed: {e}") from e

        if not is_redirect_status(response.status_code):
            return response

        location = response.headers.get("location")
        await response.aclose()

        if not location:
            raise UpstreamError("Upstream redirect missing location")
        if redirects >= max_redirects:
            raise UpstreamError("Upstream redirect limit exceeded")

        try:
            next_url = urljoin(current_url, location)
        except ValueError:
            raise InvalidRedirectError("Invalid upstream redirect URL")

        if not url_validator(next_url):
            raise InvalidRedirectError("Upstream redirect URL disallowed")

        logger.info(f"Following redirect {redirects + 1}: {current_url[:60]}... -> {next_url[:60]}...")
        current_url = next_url
        redirects += 1


async def iter_response_body(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield a streamed response body, closing the response however iteration ends."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        raise UpstreamError(f"Upstream stream failed: {e}") from e
    finally:
        await response.aclose()


async def iter_with_idle_timeout(
    body: AsyncIterator[bytes],
    idle_timeout: Optional[float] = IDLE_TIMEOUT_SECONDS,
) -> AsyncIterator[bytes]:
    """
    Re-yield chunks from ``body``, aborting if none arrives within ``idle_timeout``.

    A falsy ``idle_timeout`` disables the timer. The wrapped iterator is
    closed when this one finishes, fails or is closed early.
    """
    iterator = body.__aiter__()
    try:
        while True:
            try:
                if idle_timeout:
                    chunk = await asyncio.wait_for(iterator.__anext__(), idle_timeout)
                else:
                    chunk = await iterator.__anext__()
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                raise UpstreamError("Upstream idle timeout")
            yield chunk
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def stream_upstream(response: httpx.Response, idle_timeout: Optional[float] = IDLE_TIMEOUT_SECONDS) -> AsyncIterator[bytes]:
    """Idle-guarded body stream for a response returned by fetch_with_redirects."""
    return iter_with_idle_timeout(iter_response_body(response), idle_timeout)
