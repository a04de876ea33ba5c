"""
Evidence Seal - Content Hashing

Computes the content-addressed identity of evidence files. The digest is
always taken over the exact original bytes, before any encryption, and is
accumulated in chunks so arbitrarily large inputs never need to be resident
in memory at once.
"""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import BinaryIO, Optional, Union

from ..core.config import SUPPORTED_HASH_ALGORITHMS, HashingConfig
from ..core.evidence import ContentHash
from ..core.exceptions import HashingFailure

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class ContentHasher:
    """
    Deterministic, side-effect free content digest.

    Used identically for single-file hashing and for the leaves of a batch.
    """

    def __init__(
        self,
        algorithm: str = "sha256",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """Initialize hasher."""
        algorithm = algorithm.lower()
        if algorithm not in SUPPORTED_HASH_ALGORITHMS:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.algorithm = algorithm
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config: HashingConfig) -> "ContentHasher":
        return cls(algorithm=config.algorithm, chunk_size=config.chunk_size)

    def _new(self):
        return hashlib.new(self.algorithm)

    def hash_bytes(self, data: Union[bytes, bytearray, memoryview]) -> ContentHash:
        """
        Hash an in-memory byte sequence.

        Args:
            data: Exact original bytes

        Returns:
            ContentHash of the input

        Raises:
            HashingFailure: If the input is not a bytes-like object
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise HashingFailure(
                f"Cannot hash object of type {type(data).__name__}",
                source="bytes",
            )

        h = self._new()
        view = memoryview(data)
        for offset in range(0, len(view), self.chunk_size):
            h.update(view[offset:offset + self.chunk_size])
        return ContentHash(algorithm=self.algorithm, hexdigest=h.hexdigest())

    def hash_stream(
        self,
        stream: BinaryIO,
        expected_size: Optional[int] = None,
        source: Optional[str] = None,
    ) -> ContentHash:
        """
        Hash a binary stream chunk by chunk.

        Args:
            stream: Readable binary file-like object
            expected_size: If given, the stream must yield exactly this many bytes
            source: Label for error reporting

        Returns:
            ContentHash of everything read from the stream

        Raises:
            HashingFailure: If the stream is unreadable or truncated
        """
        h = self._new()
        total = 0

        try:
            while True:
                chunk = stream.read(self.chunk_size)
                if not chunk:
                    break
                if not isinstance(chunk, (bytes, bytearray)):
                    raise HashingFailure(
                        "Stream returned non-binary data",
                        source=source,
                        bytes_read=total,
                    )
                h.update(chunk)
                total += len(chunk)
        except OSError as e:
            raise HashingFailure(
                f"Failed to read input: {e}",
                source=source,
                bytes_read=total,
                expected_size=expected_size,
            ) from e

        if expected_size is not None and total != expected_size:
            raise HashingFailure(
                f"Truncated input: read {total} of {expected_size} bytes",
                source=source,
                bytes_read=total,
                expected_size=expected_size,
            )

        return ContentHash(algorithm=self.algorithm, hexdigest=h.hexdigest())

    def hash_file(self, path: Union[str, Path]) -> ContentHash:
        """Hash a file on disk without loading it whole."""
        path = Path(path)
        try:
            expected_size = path.stat().st_size
            with open(path, "rb") as f:
                digest = self.hash_stream(
                    f, expected_size=expected_size, source=str(path)
                )
        except HashingFailure:
            raise
        except OSError as e:
            raise HashingFailure(
                f"Cannot open {path}: {e}", source=str(path)
            ) from e

        logger.debug(f"Hashed {path.name}: {digest.short()}")
        return digest

    async def hash_bytes_async(self, data: bytes) -> ContentHash:
        """Hash bytes off the event loop."""
        return await asyncio.to_thread(self.hash_bytes, data)

    async def hash_file_async(self, path: Union[str, Path]) -> ContentHash:
        """Hash a file off the event loop."""
        return await asyncio.to_thread(self.hash_file, path)


__all__ = ["ContentHasher", "DEFAULT_CHUNK_SIZE"]
