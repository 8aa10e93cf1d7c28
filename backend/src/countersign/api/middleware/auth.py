"""Service authentication for internal callers.

Deal management and token issuance are called by the dashboard backend with
a shared bearer key. Link holders never authenticate; the signing token is
their credential.
"""

import hmac
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from countersign.config import get_settings
from countersign.shared.exceptions import AuthenticationError
from countersign.shared.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def require_service_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """Dependency that rejects callers without the service API key."""
    expected = get_settings().service_api_key
    if not expected:
        logger.error("service_api_key_not_configured", path=request.url.path)
        raise AuthenticationError("Service authentication is not configured")

    if credentials is None:
        raise AuthenticationError("Authentication required")

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning("service_auth_failed", path=request.url.path)
        raise AuthenticationError("Invalid service credentials")

    request.state.service_caller = "dashboard"
    return "dashboard"


ServiceCaller = Annotated[str, Depends(require_service_key)]
