"""Source credentials and request authentication for the upstream API.

Credentials arrive as an opaque bag from the source-configuration
collaborator (``storeName``, ``api_version``, ``accessToken``). They are
only used here to build the per-tenant endpoint URL and request headers.

Credential values support environment variable expansion using
${VAR_NAME} syntax, so tokens never need to be stored in plain text.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dataset_runner.lib.env import expand_env_vars
from dataset_runner.lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "TokenStyle",
    "SourceCredentials",
    "build_request_headers",
    "resolve_endpoint",
]

DEFAULT_API_VERSION = "2024-01"
ENDPOINT_TEMPLATE = "https://{store}.myshopify.com/admin/api/{version}/graphql.json"


class TokenStyle(Enum):
    """How the access token is sent to the upstream API."""

    ACCESS_TOKEN = "access_token"  # X-Shopify-Access-Token: <token>
    BEARER = "bearer"  # Authorization: Bearer <token>


class SourceCredentials(BaseModel):
    """Connection details for one upstream tenant.

    Examples:
        # Shopify admin API app token
        creds = SourceCredentials(
            store_name="acme",
            api_version="2024-01",
            access_token="${SHOPIFY_TOKEN}",
        )

        # Same bag as stored by the source configuration
        creds = SourceCredentials.model_validate(
            {"storeName": "acme", "api_version": "2024-01", "accessToken": "shpat_..."}
        )
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    store_name: str = Field(default="", alias="storeName")
    api_version: str = Field(default=DEFAULT_API_VERSION)
    access_token: str = Field(default="", alias="accessToken", repr=False)
    endpoint: Optional[str] = Field(default=None, description="Explicit GraphQL endpoint URL")
    token_style: TokenStyle = TokenStyle.ACCESS_TOKEN
    token_header: str = "X-Shopify-Access-Token"

    def missing_fields(self) -> List[str]:
        """Return the names of required fields that are empty."""
        missing: List[str] = []
        if not self.access_token:
            missing.append("access_token")
        if not self.endpoint:
            if not self.store_name:
                missing.append("store_name")
            if not self.api_version:
                missing.append("api_version")
        return missing

    def require_complete(self) -> None:
        """Raise ConfigurationError when required credentials are missing."""
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                "Missing required source credentials: " + ", ".join(missing),
                field=missing[0],
                suggestion="Reconnect the source or set the credential environment variables.",
            )


def resolve_endpoint(credentials: SourceCredentials) -> str:
    """Build the GraphQL endpoint URL for a tenant."""
    if credentials.endpoint:
        return expand_env_vars(credentials.endpoint)
    return ENDPOINT_TEMPLATE.format(
        store=expand_env_vars(credentials.store_name),
        version=expand_env_vars(credentials.api_version),
    )


def build_request_headers(
    credentials: SourceCredentials,
    *,
    extra_headers: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Build HTTP headers for an authenticated GraphQL POST.

    Args:
        credentials: Tenant credentials
        extra_headers: Additional headers to include

    Returns:
        Headers dict

    Raises:
        ConfigurationError: If the token cannot be resolved
    """
    headers: Dict[str, str] = {
        "Accept": "application/json",
        "Content-Type": "application/json",
    }

    try:
        token = expand_env_vars(credentials.access_token, strict=True)
    except KeyError as exc:
        raise ConfigurationError(str(exc.args[0]), field="access_token") from exc
    if not token:
        raise ConfigurationError("Access token resolved to empty string", field="access_token")

    if credentials.token_style == TokenStyle.BEARER:
        headers["Authorization"] = f"Bearer {token}"
        logger.debug("Added bearer token authentication")
    else:
        headers[credentials.token_header] = token
        logger.debug("Added access token in header '%s'", credentials.token_header)

    if extra_headers:
        for key, value in extra_headers.items():
            headers[key] = expand_env_vars(value, strict=False)

    return headers
