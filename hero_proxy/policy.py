"""
Policy module: decides whether an origin image is worth transcoding.

The logic is:
- explicit
- configurable
- free of I/O (only request parameters and origin metadata are read)
"""

from dataclasses import dataclass
from hero_proxy.fetcher import OriginResponse
from hero_proxy.params import WEBP, ProxyRequest
from hero_proxy.settings import DEFAULT_PROXY_CONFIG, ProxyConfig


@dataclass(frozen=True)
class Transcode:
    format: str
    quality: int
    grayscale: bool


@dataclass(frozen=True)
class Reject:
    reason: str


@dataclass(frozen=True)
class Bypass:
    """A rejected request being served untouched from the origin stream."""
    origin: OriginResponse
    reason: str


def media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def decide_compression(request: ProxyRequest, origin: OriginResponse, config: ProxyConfig | None = None) -> Transcode | Reject:
    cfg = config or DEFAULT_PROXY_CONFIG

    kind = media_type(origin.content_type)
    size = origin.content_length

    if not kind.startswith("image"):
        return Reject("not an image")

    if size == 0:
        return Reject("unknown size")

    # Transcoding changes byte offsets, so partial content is never touched
    if request.range_requested:
        return Reject("range request")

    if request.preferred_format == WEBP and size < cfg.min_compress_length:
        return Reject("too small")

    # Small png/gif are likely transparent or animated; lossy jpeg would not pay off
    if request.preferred_format != WEBP and kind.endswith(("png", "gif")) and size < cfg.min_transparent_compress_length:
        return Reject("small png/gif")

    return Transcode(format=request.preferred_format, quality=request.quality, grayscale=request.grayscale)


def bypass(origin: OriginResponse, rejected: Reject) -> Bypass:
    return Bypass(origin=origin, reason=rejected.reason)
