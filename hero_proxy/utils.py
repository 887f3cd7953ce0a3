import ipaddress
from typing import Iterable, Mapping

# Inbound headers that may travel to the origin. Everything else stays here.
FORWARDED_REQUEST_HEADERS = ("cookie", "dnt", "referer", "range")

# Origin headers that survive onto a bypass response.
BYPASS_RESPONSE_HEADERS = ("accept-ranges", "content-type", "content-length", "content-range")


def pick(headers: Mapping[str, str], keys: Iterable[str]) -> dict[str, str]:
    """Case-insensitive subset of `headers`, keyed by the lowercase names in `keys`."""
    lowered = {k.lower(): v for k, v in headers.items()}
    return {k: lowered[k] for k in keys if k in lowered}


def forwarded_for(headers: Mapping[str, str], remote: str | None) -> str:
    """Client address as the origin should see it: inbound X-Forwarded-For or the peer."""
    return pick(headers, ["x-forwarded-for"]).get("x-forwarded-for") or remote or ""


def is_loopback(address: str) -> bool:
    # X-Forwarded-For may be a chain; the first entry is the original client
    first = address.split(",")[0].strip()
    try:
        return ipaddress.ip_address(first).is_loopback
    except ValueError:
        return False
