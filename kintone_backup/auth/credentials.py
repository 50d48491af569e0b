"""
Credential handling for the kintone REST API.

Supports the two authentication schemes kintone accepts:
- API token (X-Cybozu-API-Token header)
- Username and password (X-Cybozu-Authorization header, base64 encoded)
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

API_TOKEN_HEADER = "X-Cybozu-API-Token"
PASSWORD_AUTH_HEADER = "X-Cybozu-Authorization"


class CredentialsError(Exception):
    """Raised when credentials are missing or incomplete."""

    pass


@dataclass
class KintoneCredentials:
    """
    Connection credentials for one kintone domain.

    An API token takes precedence over username/password when both are set.

    Attributes:
        domain: kintone domain, e.g. "example.cybozu.com"
        api_token: API token (may be several tokens joined by commas)
        username: Login name for password authentication
        password: Password for password authentication

    Usage:
        creds = KintoneCredentials(domain="example.cybozu.com", api_token="abc")
        session.headers.update(creds.auth_headers())
    """

    domain: str
    api_token: str | None = None
    username: str | None = None
    password: str | None = None

    @property
    def base_url(self) -> str:
        domain = self.domain.strip().rstrip("/")
        if domain.startswith(("http://", "https://")):
            return domain
        return f"https://{domain}"

    @property
    def uses_api_token(self) -> bool:
        return bool(self.api_token)

    def validate(self) -> None:
        """
        Check that the credentials can authenticate a request.

        Raises:
            CredentialsError: If the domain or every authentication method is missing
        """
        if not self.domain or not self.domain.strip():
            raise CredentialsError("kintone domain is not configured")
        if not self.api_token and not (self.username and self.password):
            raise CredentialsError(
                "Either an API token or a username and password must be configured"
            )

    def auth_headers(self) -> dict[str, str]:
        """
        Build the authentication headers for a request.

        Returns:
            Dictionary of HTTP headers

        Raises:
            CredentialsError: If no authentication method is configured
        """
        self.validate()

        if self.api_token:
            return {API_TOKEN_HEADER: self.api_token}

        raw = f"{self.username}:{self.password}".encode()
        logger.debug(f"Using password authentication for {self.username}")
        return {PASSWORD_AUTH_HEADER: base64.b64encode(raw).decode("ascii")}
