import hmac

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from topup.utils.config import settings
from topup.utils.errors import AuthenticationError

bearer_scheme = HTTPBearer(auto_error=False)


def require_admin(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)) -> None:
    # No configured token means admin routes are closed.
    expected = settings.admin_api_token
    if not expected or credentials is None:
        raise AuthenticationError("Access token required")
    if not hmac.compare_digest(credentials.credentials.encode("utf-8"), expected.encode("utf-8")):
        raise AuthenticationError("Invalid access token")
