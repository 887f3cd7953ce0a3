import logging
import time
from concurrent.futures import ThreadPoolExecutor
import aiohttp
from aiohttp import web
from .assembler import ResponseAssembler, strip_redirect_date
from .errors import InputError, ProxyError
from .fetcher import OriginFetcher
from .metrics import RequestRecord
from .params import resolve_params
from .policy import Reject, bypass, decide_compression
from .settings import DEFAULT_PROXY_CONFIG, ProxyConfig, UpstreamProxy, parse_upstream_proxy
from .transcode import TranscodeFailed, TranscodePipeline, configure_codec

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", ProxyConfig)
FETCHER_KEY = web.AppKey("fetcher", OriginFetcher)
PIPELINE_KEY = web.AppKey("pipeline", TranscodePipeline)


async def handle_proxy(request: web.Request) -> web.StreamResponse:
    """Entry point for GET /?url=...&jpeg=...&bw=...&l=..."""
    assembler = ResponseAssembler(request, request.app[CONFIG_KEY])
    record = RequestRecord(url=request.query.get("url"))
    t0 = time.perf_counter()
    try:
        return await run_pipeline(request, assembler, record)
    finally:
        record.ttl_s = time.perf_counter() - t0
        if assembler.response is not None:
            record.status = assembler.response.status
        logger.info(record.summary())


async def run_pipeline(request: web.Request, assembler: ResponseAssembler, record: RequestRecord) -> web.StreamResponse:
    config = request.app[CONFIG_KEY]

    try:
        params = resolve_params(request.query, request.headers, config)
    except InputError as e:
        record.error_type = type(e).__name__
        return await assembler.fail(e)

    record.url = params.target_url
    fetcher = request.app[FETCHER_KEY]
    pipeline = request.app[PIPELINE_KEY]

    try:
        async with fetcher.fetch(params, request.headers, request.remote) as origin:
            record.ttfb_s = origin.ttfb_s
            record.redirect_attempts = params.redirect_attempts
            record.original_size = origin.content_length or None

            decision = decide_compression(params, origin, config)
            if isinstance(decision, Reject):
                logger.debug("bypassing %s: %s", origin.url, decision.reason)
                record.outcome = "bypass"
                return await assembler.bypass(bypass(origin, decision))

            encoded = await pipeline.run(origin, decision)
            if isinstance(encoded, TranscodeFailed):
                record.outcome = "redirect"
                record.error_type = f"TranscodeFailed[{encoded.stage}]"
                return await assembler.redirect(params.target_url)

            record.outcome = "transcode"
            record.original_size = encoded.result.original_length
            record.encoded_size = encoded.result.encoded_length
            return await assembler.transcoded(encoded)

    except ProxyError as e:
        record.redirect_attempts = params.redirect_attempts
        record.error_type = type(e).__name__
        record.outcome = "redirect" if e.redirect_to else "error"
        logger.info("%s for %s: %s", type(e).__name__, params.target_url, e)
        return await assembler.fail(e)
    except Exception:
        logger.exception("unexpected failure while proxying %s", params.target_url)
        record.error_type = "Unexpected"
        return await assembler.error(500, "internal proxy error")


async def handle_health(request: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(config: ProxyConfig | None = None, upstream: UpstreamProxy | None = None) -> web.Application:
    """
    Build the proxy application.

    The origin connection pool, codec executor and Pillow switches are
    process-wide and set up once when the app starts.
    """
    cfg = config or DEFAULT_PROXY_CONFIG
    if upstream is None:
        upstream = parse_upstream_proxy(cfg.upstream_proxy)

    async def shared_resources(app: web.Application):
        configure_codec(cfg)
        session = aiohttp.ClientSession(auto_decompress=False)
        executor = ThreadPoolExecutor(max_workers=cfg.codec_workers, thread_name_prefix="codec")
        app[FETCHER_KEY] = OriginFetcher(session, cfg, upstream)
        app[PIPELINE_KEY] = TranscodePipeline(executor, cfg)
        yield
        await session.close()
        executor.shutdown(wait=False, cancel_futures=True)

    app = web.Application()
    app[CONFIG_KEY] = cfg
    app.cleanup_ctx.append(shared_resources)
    app.on_response_prepare.append(strip_redirect_date)
    app.router.add_get("/", handle_proxy)
    app.router.add_get("/health", handle_health)
    return app
