"""
Request-scoped failures of the proxy pipeline.

Each error knows the HTTP status it maps to and, where the client can still
be sent somewhere useful, the URL to redirect to instead. The assembler
turns them into the single client response; nothing here touches the wire.
"""


class ProxyError(Exception):
    status = 500

    def __init__(self, message: str = "", redirect_to: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.redirect_to = redirect_to


# Client input

class InputError(ProxyError):
    status = 400


class MissingTarget(InputError):
    pass


class InvalidTarget(InputError):
    pass


# Origin fetch

class OriginError(ProxyError):
    status = 502

    def __init__(self, message: str = "", url: str | None = None, redirect_to: str | None = None):
        super().__init__(message, redirect_to=redirect_to)
        self.url = url


class OriginStatusError(OriginError):
    """Origin answered with status >= 400; the client is sent there directly."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"origin returned {status_code}", url=url, redirect_to=url)
        self.status_code = status_code


class OriginTimeout(OriginError):
    status = 504


class OriginUnreachable(OriginError):
    # DNS failure, connection refused
    status = 404


class OriginTLSError(OriginError):
    status = 502


class PayloadTooLarge(OriginError):
    def __init__(self, declared: int, limit: int, url: str):
        super().__init__(f"origin declared {declared} bytes, limit is {limit}", url=url, redirect_to=url)
        self.declared = declared
        self.limit = limit


class TooManyRedirects(ProxyError):
    status = 400

    def __init__(self, attempts: int, location: str | None):
        super().__init__(f"gave up after {attempts} redirects", redirect_to=location)
        self.attempts = attempts
        self.location = location


class ProxyLoopDetected(ProxyError):
    """The inbound request already went through this proxy from loopback."""

    status = 400


# Transcoding

class DecodeError(ProxyError):
    pass


# Client response

class ResponseStateError(ProxyError):
    """A second response was attempted after one was already started."""
