import re
from dataclasses import FrozenInstanceError, dataclass
from typing import Mapping
from yarl import URL
from .errors import InvalidTarget, MissingTarget
from .settings import ProxyConfig

WEBP = "webp"
JPEG = "jpeg"

MIN_QUALITY = 1
MAX_QUALITY = 100

# Some mobile carriers wrap the target as http://1.1.x.x/bmi/<url>
_CARRIER_PREFIX = re.compile(r"http://1\.1\.\d\.\d/bmi/(https?://)?", re.IGNORECASE)


@dataclass
class ProxyRequest:
    """
    Normalized per-request parameters.

    Fields:
        target_url        : Absolute http(s) URL of the image on the origin.
        preferred_format  : "webp" or "jpeg".
        grayscale         : Convert to grayscale before encoding.
        quality           : Encoder quality, always within [1, 100].
        range_requested   : The client sent a Range header.
        redirect_attempts : Redirect hops followed so far. The only field
                            that changes after creation (OriginFetcher).
    """
    target_url: str
    preferred_format: str
    grayscale: bool
    quality: int
    range_requested: bool = False
    redirect_attempts: int = 0

    def __setattr__(self, name, value):
        if name != "redirect_attempts" and name in self.__dict__:
            raise FrozenInstanceError(f"cannot assign to field {name!r}")
        super().__setattr__(name, value)


def parse_quality(raw: str | None, default: int) -> int:
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        value = default
    return max(MIN_QUALITY, min(MAX_QUALITY, value))


def normalize_target(raw: str) -> str:
    """
    Validate the `url` parameter and return it as an absolute URL string.

    The query parser has already percent-decoded the value once; it is not
    decoded again here.
    """
    candidate = _CARRIER_PREFIX.sub("http://", raw.strip())
    try:
        url = URL(candidate)
    except (ValueError, TypeError) as e:
        raise InvalidTarget(f"malformed url: {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidTarget(f"not an absolute http(s) url: {candidate!r}")
    return str(url)


def resolve_params(query: Mapping[str, str], headers: Mapping[str, str], config: ProxyConfig) -> ProxyRequest:
    """
    Build a ProxyRequest from the query string and inbound headers.

    Raises MissingTarget / InvalidTarget; has no other effects.
    """
    raw_url = query.get("url")
    if raw_url is None or not raw_url.strip():
        raise MissingTarget("url parameter is required")

    return ProxyRequest(
        target_url=normalize_target(raw_url),
        preferred_format=JPEG if query.get("jpeg") else WEBP,
        grayscale=query.get("bw") != "0",
        quality=parse_quality(query.get("l"), config.default_quality),
        range_requested="range" in {k.lower() for k in headers.keys()},
    )
