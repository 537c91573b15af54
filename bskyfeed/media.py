"""Fetch enclosure images and shrink them below the Bluesky blob limit."""
import logging
import subprocess
import tempfile
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import requests

from bskyfeed.errors import CompressorError, TransientFetchError
from bskyfeed.models import NormalizedMedia

logger = logging.getLogger(__name__)

# app.bsky.embed.images maxSize
MAX_IMAGE_BYTES = 1_000_000
DEFAULT_QUALITY = 80


@contextmanager
def timer(operation_name: str, logger: logging.Logger):
    """Context manager to time operations and log duration."""
    start = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start
        logger.debug(f"{operation_name} took {duration:.1f}s")


@dataclass
class CompressorResult:
    """Result from running a compressor process."""

    stdout: str
    stderr: str
    exit_code: int


class Compressor(ABC):
    """An external JPEG encoder invoked as a subprocess."""

    def __init__(self, executable: str, quality: int = DEFAULT_QUALITY, timeout: float = 120):
        self.executable = executable
        self.quality = quality
        self.timeout = timeout

    @abstractmethod
    def build_args(self, input_path: Path, output_path: Path) -> list[str]:
        """Command line turning ``input_path`` into ``output_path``."""

    def compress(self, input_path: Path, output_path: Path) -> CompressorResult:
        return self.run(self.build_args(input_path, output_path))

    def run(self, args: list[str]) -> CompressorResult:
        """Run the encoder and capture its output."""
        logger.debug(f"Running {' '.join(args)}")
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CompressorError(f"Compressor timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise CompressorError(f"Compressor not found: {self.executable}") from e
        return CompressorResult(
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )


class CjpegliCompressor(Compressor):
    """jpegli's cjpegli encoder at an explicit path."""

    def build_args(self, input_path: Path, output_path: Path) -> list[str]:
        return [
            self.executable,
            "-v",
            "-q",
            str(self.quality),
            str(input_path),
            str(output_path),
        ]


class MozjpegCompressor(Compressor):
    """mozjpeg's cjpeg, resolved from PATH unless given a path."""

    def __init__(self, executable: str = "cjpeg", quality: int = DEFAULT_QUALITY, timeout: float = 120):
        super().__init__(executable, quality, timeout)

    def build_args(self, input_path: Path, output_path: Path) -> list[str]:
        return [
            self.executable,
            "-outfile",
            str(output_path),
            "-quality",
            str(self.quality),
            str(input_path),
        ]


class MediaNormalizer:
    """Download an image and recompress it when it is too large to embed."""

    def __init__(
        self,
        compressor: Compressor,
        session: requests.Session | None = None,
        timeout: float = 30,
        max_bytes: int = MAX_IMAGE_BYTES,
    ):
        self.compressor = compressor
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_bytes = max_bytes

    def fetch(self, uri: str) -> tuple[bytes, str]:
        """GET ``uri`` and return its body and media type."""
        try:
            response = self.session.get(uri, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientFetchError(f"Error fetching media {uri}: {e}") from e
        if not response.ok:
            raise TransientFetchError(f"{response.status_code}: {response.reason} ({uri})")

        content_type = response.headers.get("Content-Type", "application/octet-stream")
        return response.content, content_type.split(";")[0].strip()

    def normalize(self, uri: str) -> NormalizedMedia:
        """Fetch ``uri``; pass small images through, recompress large ones as JPEG."""
        data, mime_type = self.fetch(uri)
        if len(data) <= self.max_bytes:
            return NormalizedMedia(data=data, mime_type=mime_type)

        logger.info(f"Compressing {uri} ({len(data)} bytes)")
        with timer("Compression", logger):
            compressed = self.compress(data)
        logger.info(f"  Compressed to {len(compressed)} bytes")
        return NormalizedMedia(data=compressed, mime_type="image/jpeg")

    def compress(self, data: bytes) -> bytes:
        """Run ``data`` through the compressor in a private temp directory."""
        with tempfile.TemporaryDirectory(prefix="bsky-image-processor-") as tmpdir:
            input_path = Path(tmpdir) / "input.jpg"
            output_path = Path(tmpdir) / "output.jpg"
            input_path.write_bytes(data)

            result = self.compressor.compress(input_path, output_path)
            if result.stdout:
                logger.info(result.stdout.strip())
            if result.stderr:
                logger.debug(result.stderr.strip())

            if result.exit_code != 0:
                raise CompressorError(
                    f"Exited with code {result.exit_code}",
                    exit_code=result.exit_code,
                )
            if not output_path.exists():
                raise CompressorError(f"Compressor produced no output at {output_path}")

            return output_path.read_bytes()
