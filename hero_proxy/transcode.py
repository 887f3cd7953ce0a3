import asyncio
import io
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Iterator
from PIL import Image, ImageFile
from .errors import DecodeError
from .fetcher import OriginResponse
from .metrics import TranscodeResult
from .params import JPEG, WEBP
from .policy import Transcode
from .settings import ProxyConfig

logger = logging.getLogger(__name__)

PIL_FORMATS = {WEBP: "WEBP", JPEG: "JPEG"}


def configure_codec(config: ProxyConfig) -> None:
    """
    Apply the process-wide Pillow switches. Called once at startup, never
    per request.
    """
    ImageFile.LOAD_TRUNCATED_IMAGES = config.allow_truncated_images
    if config.unlimited_pixels:
        Image.MAX_IMAGE_PIXELS = None


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    format: str
    result: TranscodeResult

    @property
    def content_type(self) -> str:
        return f"image/{self.format}"

    def chunks(self, size: int) -> Iterator[bytes]:
        for start in range(0, len(self.data), size):
            yield self.data[start:start + size]


@dataclass(frozen=True)
class TranscodeFailed:
    """
    Failure variant of a transcode run.

    stage is one of "read", "decode", "transform", "encode". The caller
    answers with a redirect to the original URL; no partial image is sent.
    """
    stage: str
    reason: str


class TranscodePipeline:
    """
    Streams origin bytes through Pillow: decode -> resize? -> grayscale? -> encode.

    - Origin chunks are pulled one at a time and fed to an incremental
      decoder, so reading never runs ahead of decoding
    - Image dimensions come from the same stream as the pixels
    - All Pillow work runs on the injected executor, off the event loop
    - Pillow encodes in one shot, so the output is buffered; its length is
      known before any header goes out
    """

    def __init__(self, executor: Executor, config: ProxyConfig):
        self.executor = executor
        self.config = config

    async def run(self, origin: OriginResponse, plan: Transcode) -> EncodedImage | TranscodeFailed:
        loop = asyncio.get_running_loop()
        parser = ImageFile.Parser()
        image = None
        stage = "read"
        original = 0

        try:
            async for chunk in origin.body.iter_chunked(self.config.chunk_size):
                original += len(chunk)
                if original > self.config.max_content_length:
                    return self._failed(origin, "read", f"body exceeds {self.config.max_content_length} bytes")
                stage = "decode"
                await loop.run_in_executor(self.executor, parser.feed, chunk)
                stage = "read"

            stage = "decode"
            if parser.image is None:
                raise DecodeError("no image header in origin body")
            image = await loop.run_in_executor(self.executor, parser.close)

            stage = "transform"
            image = await loop.run_in_executor(self.executor, self.transform, image, plan)

            stage = "encode"
            data = await loop.run_in_executor(self.executor, self.encode, image, plan)
        except asyncio.CancelledError:
            logger.debug("transcode cancelled at %s for %s", stage, origin.url)
            raise
        except Exception as e:
            return self._failed(origin, stage, f"{type(e).__name__}: {e}")
        finally:
            if image is not None:
                image.close()

        return EncodedImage(
            data=data,
            format=plan.format,
            result=TranscodeResult(encoded_length=len(data), original_length=original),
        )

    def transform(self, image: Image.Image, plan: Transcode) -> Image.Image:
        width, height = image.size
        # Encoder hard limit; width follows the aspect ratio, never capped alone
        if height > self.config.max_height:
            new_width = max(1, round(width * self.config.max_height / height))
            image = image.resize((new_width, self.config.max_height), Image.Resampling.LANCZOS)

        alpha = image.has_transparency_data
        if plan.grayscale:
            image = image.convert("LA" if alpha else "L")

        if plan.format == JPEG:
            return image.convert("L" if plan.grayscale else "RGB")
        return image.convert("RGBA" if alpha else "RGB")

    def encode(self, image: Image.Image, plan: Transcode) -> bytes:
        buf = io.BytesIO()
        if plan.format == WEBP:
            image.save(buf, PIL_FORMATS[WEBP], quality=plan.quality, method=self.config.webp_method)
        else:
            image.save(
                buf, PIL_FORMATS[JPEG], quality=plan.quality,
                optimize=self.config.jpeg_optimize, progressive=self.config.jpeg_progressive,
            )
        return buf.getvalue()

    def _failed(self, origin: OriginResponse, stage: str, reason: str) -> TranscodeFailed:
        logger.warning("transcode failed at %s for %s: %s", stage, origin.url, reason)
        return TranscodeFailed(stage=stage, reason=reason)
