from dataclasses import dataclass
from typing import Optional

from fastapi import Header, Request
from jose import JWTError, jwt

from billing.errors import ConfigMissing, VerificationError


def get_services(request: Request):
    return request.app.state.services


@dataclass
class CurrentUser:
    user_id: str
    email: Optional[str] = None


def verify_token(request: Request, authorization: Optional[str] = Header(None)) -> CurrentUser:
    secret = get_services(request).settings.jwt_secret
    if not secret:
        raise ConfigMissing("JWT_SECRET")
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError(scheme)
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise VerificationError("Invalid or missing token")

    user_id = claims.get("sub") or claims.get("user_id")
    if not user_id:
        raise VerificationError("Token has no subject")
    email = claims.get("email")
    return CurrentUser(user_id=str(user_id), email=email.strip().lower() if email else None)
