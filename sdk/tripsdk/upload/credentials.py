"""Credential providers."""

from __future__ import annotations

from tripsdk.core.errors import AuthenticationError


class StaticCredentialProvider:
    """CredentialProvider handing out one preconfigured token."""

    def __init__(self, token: str) -> None:
        self._token = token

    async def fresh_token(self) -> str:
        if not self._token:
            raise AuthenticationError("no access token configured")
        return self._token
