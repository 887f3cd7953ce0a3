import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Mapping
import aiohttp
from faker import Faker
from multidict import CIMultiDictProxy
from yarl import URL
from .errors import (
    InvalidTarget,
    OriginError,
    OriginStatusError,
    OriginTimeout,
    OriginTLSError,
    OriginUnreachable,
    PayloadTooLarge,
    ProxyLoopDetected,
    TooManyRedirects,
)
from .params import ProxyRequest
from .settings import ProxyConfig, UpstreamProxy
from .utils import FORWARDED_REQUEST_HEADERS, forwarded_for, is_loopback, pick

logger = logging.getLogger(__name__)


@dataclass
class OriginResponse:
    """
    Terminal origin response (after redirects), valid inside OriginFetcher.fetch().

    Fields:
        url            : URL that produced this response (end of the redirect chain).
        status         : HTTP status from the origin (< 400, never a followed 3xx).
        headers        : Case-insensitive origin headers.
        content_type   : Raw Content-Type header, "" when absent.
        content_length : Declared Content-Length, 0 when absent or unparsable.
        body           : Origin byte stream; can be consumed once.
        ttfb_s         : Seconds until the terminal response headers arrived.
    """
    url: str
    status: int
    headers: CIMultiDictProxy
    content_type: str
    content_length: int
    body: aiohttp.StreamReader
    ttfb_s: float


def declared_length(headers: Mapping[str, str]) -> int:
    raw = headers.get("Content-Length")
    try:
        return max(int(raw), 0) if raw is not None else 0
    except ValueError:
        return 0


class OriginFetcher:
    """
    Fetches the target image for one ProxyRequest, following redirects by hand.

    - The transport never auto-follows; each hop gets the same header policy
    - At most config.max_redirects extra hops, counted on the ProxyRequest
    - Refuses requests that already came through this proxy from loopback
    - Sends a browser User-Agent picked fresh for every request
    - Translates transport failures into the OriginError family
    """
    name = "origin"

    def __init__(self, session: aiohttp.ClientSession, config: ProxyConfig, proxy: UpstreamProxy | None = None):
        self.session = session
        self.config = config
        self.proxy = proxy
        self._agents = Faker() if config.randomize_user_agent else None
        self._timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=config.fetch_timeout_s,
            sock_read=config.fetch_timeout_s,
        )

    def is_proxy_loop(self, inbound_headers: Mapping[str, str], client_addr: str) -> bool:
        via = pick(inbound_headers, ["via"]).get("via", "")
        return self.config.via_signature in via and is_loopback(client_addr)

    def user_agent(self) -> str:
        if self._agents is None:
            return self.config.user_agent
        return self._agents.user_agent()

    def outbound_headers(self, inbound_headers: Mapping[str, str], client_addr: str) -> dict[str, str]:
        return {
            **pick(inbound_headers, FORWARDED_REQUEST_HEADERS),
            "user-agent": self.user_agent(),
            "x-forwarded-for": client_addr,
            "via": self.config.via_signature,
            "accept-encoding": "identity",
        }

    @asynccontextmanager
    async def fetch(
        self,
        request: ProxyRequest,
        inbound_headers: Mapping[str, str],
        remote: str | None = None,
    ) -> AsyncIterator[OriginResponse]:
        """
        Yield the terminal OriginResponse for `request`; the connection is
        released when the block exits, including on cancellation.

        Raises ProxyLoopDetected before any network I/O, then one of
        TooManyRedirects, OriginStatusError, PayloadTooLarge or another
        OriginError.
        """
        client_addr = forwarded_for(inbound_headers, remote)
        if self.is_proxy_loop(inbound_headers, client_addr):
            raise ProxyLoopDetected("request already passed through this proxy", redirect_to=request.target_url)

        headers = self.outbound_headers(inbound_headers, client_addr)
        t0 = time.perf_counter()
        resp, url = await self._follow(request, headers)
        ttfb = time.perf_counter() - t0

        try:
            yield OriginResponse(
                url=url,
                status=resp.status,
                headers=resp.headers,
                content_type=resp.headers.get("Content-Type", ""),
                content_length=declared_length(resp.headers),
                body=resp.content,
                ttfb_s=ttfb,
            )
        finally:
            resp.release()

    async def _follow(self, request: ProxyRequest, headers: dict[str, str]) -> tuple[aiohttp.ClientResponse, str]:
        url = request.target_url
        while True:
            resp = await self._send(url, headers)
            location = resp.headers.get("Location")

            if 300 <= resp.status < 400 and location:
                resp.release()
                try:
                    next_url = str(URL(url).join(URL(location)))
                except ValueError as e:
                    raise OriginError(f"unusable redirect location {location!r}", url=url) from e

                if request.redirect_attempts >= self.config.max_redirects:
                    raise TooManyRedirects(request.redirect_attempts, next_url)

                request.redirect_attempts += 1
                logger.debug("redirect %d: %s -> %s", request.redirect_attempts, url, next_url)
                url = next_url
                continue

            if resp.status >= 400:
                resp.release()
                raise OriginStatusError(resp.status, url)

            size = declared_length(resp.headers)
            if size > self.config.max_content_length:
                resp.release()
                raise PayloadTooLarge(size, self.config.max_content_length, url)

            return resp, url

    async def _send(self, url: str, headers: dict[str, str]) -> aiohttp.ClientResponse:
        proxy_url, proxy_auth = None, None
        if self.proxy is not None:
            proxy_url = self.proxy.url
            if self.proxy.username:
                proxy_auth = aiohttp.BasicAuth(self.proxy.username, self.proxy.password or "")
        try:
            return await self.session.get(
                url, headers=headers, proxy=proxy_url, proxy_auth=proxy_auth,
                timeout=self._timeout, allow_redirects=False, ssl=self.config.verify_tls,
            )
        except asyncio.TimeoutError as e:
            raise OriginTimeout(f"timed out after {self.config.fetch_timeout_s}s", url=url) from e
        except aiohttp.ClientSSLError as e:
            raise OriginTLSError(str(e), url=url) from e
        except aiohttp.ClientConnectorError as e:
            raise OriginUnreachable(str(e), url=url) from e
        except aiohttp.InvalidURL as e:
            raise InvalidTarget(f"cannot request {url!r}") from e
        except aiohttp.ClientError as e:
            raise OriginError(f"{type(e).__name__}: {e}", url=url) from e
