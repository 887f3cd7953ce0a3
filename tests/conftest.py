import asyncio
import io
import random
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from PIL import Image
from hero_proxy.app import create_app
from hero_proxy.settings import ProxyConfig


def make_image(fmt: str = "JPEG", size: tuple[int, int] = (200, 200), mode: str = "RGB", seed: int = 7) -> bytes:
    """Noise image: compresses badly, so it is always well above the bypass thresholds."""
    bands = len(mode)
    noise = random.Random(seed).randbytes(size[0] * size[1] * bands)
    image = Image.frombytes(mode, size, noise)
    buf = io.BytesIO()
    image.save(buf, fmt, **({"quality": 95} if fmt == "JPEG" else {}))
    return buf.getvalue()


PHOTO = make_image()
HITS_KEY = web.AppKey("hits", dict)
BROKEN = b"this is not an image at all " * 200


def make_origin_app() -> web.Application:
    """Stand-in origin with one route per behavior under test."""
    hits = {"count": 0}

    @web.middleware
    async def count_hits(request, handler):
        hits["count"] += 1
        return await handler(request)

    async def photo(request):
        return web.Response(body=PHOTO, content_type="image/jpeg")

    async def tiny(request):
        return web.Response(body=b"\x00" * 500, content_type="image/jpeg")

    async def page(request):
        return web.Response(text="<html>" + "x" * 5000 + "</html>", content_type="text/html")

    async def broken(request):
        return web.Response(
            body=BROKEN,
            content_type="image/jpeg",
            headers={"ETag": '"abc"', "Cache-Control": "max-age=60", "Expires": "Thu, 01 Jan 2099 00:00:00 GMT"},
        )

    async def ranged(request):
        if "Range" not in request.headers:
            return web.Response(body=PHOTO, content_type="image/jpeg")
        part = PHOTO[0:100]
        return web.Response(
            status=206,
            body=part,
            content_type="image/jpeg",
            headers={"Content-Range": f"bytes 0-99/{len(PHOTO)}", "Accept-Ranges": "bytes"},
        )

    async def hop(request):
        n = int(request.match_info["n"])
        target = f"/hop/{n - 1}" if n > 1 else "/photo.jpg"
        raise web.HTTPFound(target)

    async def relative(request):
        raise web.HTTPMovedPermanently("../../photo.jpg")

    async def missing(request):
        raise web.HTTPNotFound()

    async def slow(request):
        await asyncio.sleep(1.5)
        return web.Response(body=PHOTO, content_type="image/jpeg")

    async def echo(request):
        return web.json_response(dict(request.headers))

    async def endless(request):
        # No Content-Length, so the body goes out chunked
        resp = web.StreamResponse()
        resp.content_type = "image/jpeg"
        await resp.prepare(request)
        for _ in range(4):
            await resp.write(b"\xff" * 50_000)
        await resp.write_eof()
        return resp

    async def cut(request):
        resp = web.StreamResponse()
        resp.content_type = "application/octet-stream"
        resp.content_length = 100_000
        await resp.prepare(request)
        await resp.write(b"\x01" * 30_000)
        await asyncio.sleep(0.1)
        request.transport.close()
        return resp

    async def drip(request):
        resp = web.StreamResponse()
        resp.content_type = "image/jpeg"
        resp.content_length = len(PHOTO)
        await resp.prepare(request)
        try:
            for start in range(0, len(PHOTO), 1000):
                await resp.write(PHOTO[start:start + 1000])
                hits["drip_sent"] = hits.get("drip_sent", 0) + 1
                await asyncio.sleep(0.05)
        except (asyncio.CancelledError, ConnectionResetError):
            hits["drip_aborted"] = True
            raise
        await resp.write_eof()
        return resp

    app = web.Application(middlewares=[count_hits])
    app[HITS_KEY] = hits
    app.router.add_get("/photo.jpg", photo)
    app.router.add_get("/tiny.jpg", tiny)
    app.router.add_get("/page", page)
    app.router.add_get("/broken.jpg", broken)
    app.router.add_get("/ranged.jpg", ranged)
    app.router.add_get("/hop/{n}", hop)
    app.router.add_get("/nested/dir/relative", relative)
    app.router.add_get("/missing", missing)
    app.router.add_get("/slow", slow)
    app.router.add_get("/echo", echo)
    app.router.add_get("/endless.jpg", endless)
    app.router.add_get("/cut.bin", cut)
    app.router.add_get("/drip.jpg", drip)
    return app


@pytest.fixture
async def origin():
    server = TestServer(make_origin_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return ProxyConfig(fetch_timeout_s=0.3, codec_workers=2, max_height=100)


@pytest.fixture
async def proxy(proxy_config):
    client = TestClient(TestServer(create_app(proxy_config)))
    await client.start_server()
    yield client
    await client.close()


def origin_hits(server: TestServer) -> int:
    return server.app[HITS_KEY]["count"]
