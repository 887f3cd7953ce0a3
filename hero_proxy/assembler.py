import asyncio
import logging
from typing import AsyncIterable, Iterable
import aiohttp
from aiohttp import web
from .errors import ProxyError, ResponseStateError
from .policy import Bypass
from .settings import ProxyConfig
from .transcode import EncodedImage
from .utils import BYPASS_RESPONSE_HEADERS, pick

logger = logging.getLogger(__name__)

CROSS_ORIGIN_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Cross-Origin-Resource-Policy": "cross-origin",
    "Cross-Origin-Embedder-Policy": "unsafe-none",
}


class ResponseAssembler:
    """
    The only writer of the client response for one request.

    - At most one response is started; a second attempt raises ResponseStateError
    - Until headers are sent, any failure can still become a redirect or a status
    - After headers are sent, a failure closes the connection and nothing more is written
    """

    def __init__(self, request: web.Request, config: ProxyConfig):
        self.request = request
        self.config = config
        self.response: web.StreamResponse | None = None

    @property
    def headers_sent(self) -> bool:
        return self.response is not None and self.response.prepared

    def _claim(self, response: web.StreamResponse) -> web.StreamResponse:
        if self.response is not None:
            raise ResponseStateError(f"response already started with status {self.response.status}")
        self.response = response
        return response

    def _image_headers(self) -> dict[str, str]:
        return {
            **CROSS_ORIGIN_HEADERS,
            "Content-Encoding": "identity",
            "Cache-Control": self.config.cache_control,
        }

    async def bypass(self, outcome: Bypass) -> web.StreamResponse:
        """Serve the origin bytes untouched, keeping its status (e.g. 206)."""
        origin = outcome.origin
        resp = self._claim(web.StreamResponse(status=origin.status))
        resp.headers.update(self._image_headers())
        resp.headers.update(pick(origin.headers, BYPASS_RESPONSE_HEADERS))
        resp.headers["X-Proxy-Bypass"] = "1"

        await resp.prepare(self.request)
        # An undeclared length was never checked by the fetcher, so count here
        await self._stream(resp, origin.body.iter_chunked(self.config.chunk_size), limit=self.config.max_content_length)
        return resp

    async def transcoded(self, encoded: EncodedImage) -> web.StreamResponse:
        resp = self._claim(web.StreamResponse(status=200))
        resp.headers.update(self._image_headers())
        resp.content_type = encoded.content_type
        resp.content_length = len(encoded.data)
        resp.headers["X-Original-Size"] = str(encoded.result.original_length)
        resp.headers["X-Bytes-Saved"] = str(encoded.result.bytes_saved)

        await resp.prepare(self.request)
        await self._stream(resp, _aiter(encoded.chunks(self.config.chunk_size)))
        return resp

    async def redirect(self, url: str) -> web.StreamResponse:
        """
        302 to `url`. Built from scratch, so no cache-control, expires or etag
        from the origin can leak onto it.
        """
        if self.response is not None:
            return self.abort()
        resp = self._claim(web.Response(status=302))
        resp.headers.update(CROSS_ORIGIN_HEADERS)
        resp.headers["Location"] = url
        resp.headers["Content-Length"] = "0"
        return resp

    async def error(self, status: int, message: str) -> web.StreamResponse:
        if self.response is not None:
            return self.abort()
        resp = self._claim(web.Response(status=status, text=message))
        resp.headers.update(CROSS_ORIGIN_HEADERS)
        return resp

    async def fail(self, error: ProxyError) -> web.StreamResponse:
        """
        Turn a pipeline error into the client response.

        Errors that know where the image lives become a redirect there;
        the rest become their own status.
        """
        if error.redirect_to:
            return await self.redirect(error.redirect_to)
        return await self.error(error.status, str(error))

    def abort(self) -> web.StreamResponse:
        """Drop the connection after headers went out; the client sees a truncated body."""
        transport = self.request.transport
        if transport is not None:
            transport.close()
        if self.response is None:
            raise ResponseStateError("nothing to abort")
        return self.response

    async def _stream(self, resp: web.StreamResponse, chunks: AsyncIterable[bytes], limit: int | None = None) -> None:
        # write() waits for the socket to drain, which is what pauses the origin read
        sent = 0
        try:
            async for chunk in chunks:
                sent += len(chunk)
                if limit is not None and sent > limit:
                    logger.warning("origin body for %s passed %d bytes after headers were sent", self.request.rel_url, limit)
                    self.abort()
                    return
                await resp.write(chunk)
            await resp.write_eof()
        except ConnectionResetError:
            logger.info("client went away during %s", self.request.rel_url)
            self.abort()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("origin stream broke after headers were sent: %s: %s", type(e).__name__, e)
            self.abort()


async def _aiter(items: Iterable[bytes]):
    for item in items:
        yield item


async def strip_redirect_date(request: web.Request, response: web.StreamResponse) -> None:
    """on_response_prepare hook: fallback redirects go out without a Date header."""
    if response.status == 302 and "Location" in response.headers:
        response.headers.popall("Date", None)
