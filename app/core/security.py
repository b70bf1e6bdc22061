import hmac
from fastapi import Depends, HTTPException, status, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from jwt import PyJWTError
from app.api.deps import get_settings
from app.core.config import Settings
from typing import Dict, Any, Optional

security = HTTPBearer()


def decode_token(token: str, app_settings: Settings) -> Dict[str, Any]:
    return jwt.decode(
        token,
        app_settings.MAIN_SERVICE_JWT_PUBLIC_KEY,
        algorithms=[app_settings.JWT_ALGORITHM],
        audience=app_settings.EXPECTED_JWT_AUDIENCE,
        issuer=app_settings.EXPECTED_JWT_ISSUER,
    )


def get_jwt_payload(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    app_settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """
    Returns the full JWT payload
    """
    try:
        return decode_token(credentials.credentials, app_settings)
    except PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")


def get_current_user_id(payload: Dict[str, Any] = Depends(get_jwt_payload)) -> str:
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token: missing sub.")
    return user_id


def verify_csrf_token(
    payload: Dict[str, Any] = Depends(get_jwt_payload),
    x_csrf_token: Optional[str] = Header(None),
    app_settings: Settings = Depends(get_settings),
) -> None:
    """
    Checks the X-CSRF-Token header against the "csrf" claim of the bearer token
    """
    if not app_settings.CSRF_REQUIRED:
        return
    expected = payload.get("csrf")
    if not expected or not x_csrf_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing CSRF token.")
    if not hmac.compare_digest(str(expected).encode(), x_csrf_token.encode()):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid CSRF token.")


def check_upload_access(payload: Dict[str, Any], upload_session_id: str) -> bool:
    """
    Checks the upload_id claim of the token, when present, against the requested session
    """
    if not payload.get("sub"):
        return False

    allowed_upload_id = payload.get("upload_id")
    if allowed_upload_id is None:
        return True

    return str(allowed_upload_id) == upload_session_id
