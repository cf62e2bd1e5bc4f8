"""
Image Sources
=============

An image source hands out byte ranges of firmware. The stage sequencer is
the only consumer, and it reads every range exactly once while building a
write sequence, before any USB traffic.

Sources must be deterministic: the same (offset, length) always yields the
same bytes. Nothing downstream re-reads a source to recover from errors.
"""

import logging
from pathlib import Path
from typing import Protocol, Union, runtime_checkable

from k230_boot.errors import SourceRangeError

logger = logging.getLogger(__name__)


@runtime_checkable
class ImageSource(Protocol):
    """Read-only byte ranges of a firmware image."""

    @property
    def size(self) -> int:
        """Total number of bytes available."""
        ...

    def read(self, offset: int, length: int) -> bytes:
        """Return exactly length bytes starting at offset."""
        ...


def _check_range(name: str, size: int, offset: int, length: int) -> None:
    if offset < 0 or length < 0 or offset + length > size:
        raise SourceRangeError(
            f"range 0x{offset:X}+0x{length:X} is outside '{name}' ({size} bytes)"
        )


class BytesImageSource:
    """Image held in memory."""

    def __init__(self, data: bytes, name: str = "<bytes>"):
        self._data = bytes(data)
        self.name = name

    @property
    def size(self) -> int:
        return len(self._data)

    def read(self, offset: int, length: int) -> bytes:
        _check_range(self.name, self.size, offset, length)
        return self._data[offset:offset + length]

    def __repr__(self) -> str:
        return f"BytesImageSource({self.name!r}, {self.size} bytes)"


class FileImageSource:
    """
    Image read from a file on disk.

    The file is opened for every read so the source holds no handle
    between reads.

    Raises:
        FileNotFoundError: If the file does not exist.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"Image file not found: {self.path}")
        self.name = self.path.name

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    def read(self, offset: int, length: int) -> bytes:
        _check_range(self.name, self.size, offset, length)
        with self.path.open("rb") as f:
            f.seek(offset)
            data = f.read(length)
        logger.debug("Read %d bytes at 0x%X from %s", len(data), offset, self.path)
        return data

    def __repr__(self) -> str:
        return f"FileImageSource({str(self.path)!r})"
