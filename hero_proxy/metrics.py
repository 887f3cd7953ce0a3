from dataclasses import dataclass


@dataclass(frozen=True)
class TranscodeResult:
    """
    Byte accounting for one successful transcode.

    bytes_saved is not clamped: a re-encode that grows the image reports a
    negative number.
    """
    encoded_length: int
    original_length: int

    @property
    def bytes_saved(self) -> int:
        return self.original_length - self.encoded_length


@dataclass
class RequestRecord:
    """
    Normalized per-request summary, logged once the response is finalized.

    Fields:
        url               : Target URL requested by the client (None if invalid).
        outcome           : "transcode", "bypass", "redirect" or "error".
        status            : HTTP status sent to the client.
        original_size     : Origin bytes (declared or counted), if known.
        encoded_size      : Encoded bytes for transcoded responses.
        redirect_attempts : Origin redirect hops followed.
        ttfb_s            : Time until the origin answered (seconds).
        ttl_s             : Total handling time (seconds).
        error_type        : Name of the error class that short-circuited the
                            pipeline, if any.
    """
    url: str | None
    outcome: str = "error"
    status: int | None = None
    original_size: int | None = None
    encoded_size: int | None = None
    redirect_attempts: int = 0
    ttfb_s: float | None = None
    ttl_s: float | None = None
    error_type: str | None = None

    @property
    def bytes_saved(self) -> int | None:
        if self.original_size is None or self.encoded_size is None:
            return None
        return self.original_size - self.encoded_size

    def summary(self) -> str:
        parts = [
            f"{self.outcome}",
            f"status={self.status}",
            f"url={self.url}",
            f"redirects={self.redirect_attempts}",
        ]
        if self.bytes_saved is not None:
            parts.append(f"original={self.original_size} saved={self.bytes_saved}")
        if self.error_type:
            parts.append(f"error={self.error_type}")
        if self.ttl_s is not None:
            parts.append(f"ttl={self.ttl_s:.3f}s")
        return " ".join(parts)
