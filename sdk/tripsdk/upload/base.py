"""Upload interfaces (ports): the collector uploader and the credential source."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from tripsdk.core.models import RequestMetaData, UploadResult

# Receives the upload progress of a single file, 0.0 .. 1.0.
ProgressCallback = Callable[[float], None]


class Uploader(Protocol):
    """Port: transmits one file to the collector service.

    Returns the collector's verdict or raises an ``UploadFailedError``
    subclass describing why the transmission failed.
    """

    async def upload_core(self, token: str, meta: RequestMetaData, path: Path,
                          progress: ProgressCallback) -> UploadResult: ...

    async def upload_attachment(self, token: str, meta: RequestMetaData, attachment_id: int,
                                path: Path, progress: ProgressCallback) -> UploadResult: ...


class CredentialProvider(Protocol):
    """Port: hands out a currently valid access token, refreshing it if needed.

    Raises ``AuthenticationError`` when no token can be obtained.
    """

    async def fresh_token(self) -> str: ...
