"""
Error types raised by the archive builder, reader and loaders.

Archive-level failures (bad container, missing manifest, failed download)
propagate to the caller. Per-asset extraction failures are caught by the
asset load coordinator and surface as a load state instead.
"""

from typing import List, Optional


class ArchiveError(Exception):
    """Base class for all archive3d errors."""


class ArchiveValidationError(ArchiveError, ValueError):
    """
    Builder state failed validation before packing.

    Attributes:
        errors: Every violated rule, not just the first one
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Archive validation failed: " + "; ".join(self.errors))


class MalformedContainerError(ArchiveError, ValueError):
    """Container is not a ZIP, or its manifest is missing or undecodable."""


class NotFoundError(ArchiveError, LookupError):
    """Requested entry is not present in the container index."""

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__(f"File not found in archive: {file_name}")


class DecodeError(ArchiveError):
    """Entry is present in the index but its bytes fail to decompress."""

    def __init__(self, file_name: str, cause: Optional[BaseException] = None):
        self.file_name = file_name
        self.cause = cause
        message = f"Failed to decompress {file_name}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class NetworkError(ArchiveError):
    """Remote container could not be fetched."""

    def __init__(self, message: str, url: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class UnsafePathError(ArchiveError, ValueError):
    """Entry name failed the path-traversal / charset checks."""

    def __init__(self, file_name: str, reason: str):
        self.file_name = file_name
        self.reason = reason
        super().__init__(f"Invalid filename in archive: {reason}")
