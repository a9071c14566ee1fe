from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import ExpiredSignatureError, jwt
from jose.exceptions import JOSEError

from app.config import Settings, get_settings

ROLE_PERMISSIONS = {
    "super_admin": ["*"],
    "admin": ["payments:*", "members:*", "reports:*"],
    "payment_manager": ["payments:read", "payments:write", "payments:refund", "members:read"],
    "report_manager": ["reports:*", "members:read", "payments:read"],
    "member": ["self:read", "self:write"],
}


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = "member"
    email: Optional[str] = None

    def has_permission(self, permission: str) -> bool:
        granted = ROLE_PERMISSIONS.get(self.role, [])
        if "*" in granted:
            return True
        resource = permission.split(":", 1)[0]
        return permission in granted or f"{resource}:*" in granted


def verify_token(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (JOSEError, ValueError, AttributeError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("id") or claims.get("sub")
    if not user_id or claims.get("is_active") is False:
        raise HTTPException(status_code=401, detail="Invalid or inactive user")
    return CurrentUser(id=str(user_id), role=claims.get("role") or "member", email=claims.get("email"))


def require_permission(permission: str):
    def dependency(user: CurrentUser = Depends(verify_token)) -> CurrentUser:
        if not user.has_permission(permission):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency
