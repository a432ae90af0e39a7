"""
Explicit payload handle for bytes packed into, or extracted from, a container.
"""

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

DEFAULT_MIME = "application/octet-stream"

BytesLike = Union[bytes, bytearray, memoryview]


def guess_mime(name: str) -> str:
    """Guess a MIME type from a file name, falling back to octet-stream."""
    mime, _ = mimetypes.guess_type(name)
    return mime or DEFAULT_MIME


@dataclass(frozen=True, eq=False)
class PayloadHandle:
    """
    Immutable byte payload with a name and MIME type.

    Handles compare and hash by identity, so a handle can key a cache
    (e.g. content digests) without hashing its bytes.
    """
    source: bytes
    name: str = ""
    mime: str = DEFAULT_MIME

    @property
    def size(self) -> int:
        return len(self.source)

    def read(self) -> bytes:
        return self.source

    @classmethod
    def from_bytes(
        cls,
        data: BytesLike,
        name: str = "",
        mime: Optional[str] = None,
    ) -> "PayloadHandle":
        return cls(source=bytes(data), name=name, mime=mime or guess_mime(name))

    @classmethod
    def from_path(cls, path: Union[str, Path], mime: Optional[str] = None) -> "PayloadHandle":
        """Read a file from disk into a handle named after the file."""
        path = Path(path)
        return cls.from_bytes(path.read_bytes(), name=path.name, mime=mime)


def as_payload(data: Union[PayloadHandle, BytesLike], name: str = "") -> PayloadHandle:
    """Wrap raw bytes in a handle; handles pass through unchanged."""
    if isinstance(data, PayloadHandle):
        return data
    if isinstance(data, (bytes, bytearray, memoryview)):
        return PayloadHandle.from_bytes(data, name=name)
    raise TypeError(f"Expected bytes or PayloadHandle, got {type(data).__name__}")
