"""
Phone/OTP sessions.

The OTP exchange happens between the browser and Firebase. This module only
checks the Firebase ID token, issues our own signed session token (subject is
the phone number) and resolves it back on later requests.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

import firebase_admin
import jwt
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin.exceptions import FirebaseError

import config
from database import DocumentStore, get_store
from errors import AuthenticationRequired, PermissionDenied, ServiceUnavailable
from services import UserService, normalize_phone

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class Identity:
    """Authenticated caller. The phone number doubles as the user id."""

    def __init__(self, phone_number: str):
        self.phone_number = phone_number
        self.user_id = phone_number

    def owns(self, user_id: str) -> bool:
        return user_id in (self.phone_number, self.user_id)

    def __repr__(self):
        return f"Identity({self.phone_number!r})"


# ----------------------- Tokens -----------------------
def create_session_token(phone_number: str) -> str:
    exp = datetime.now(timezone.utc) + config.SESSION_TTL
    payload = {"sub": phone_number, "phoneNumber": phone_number, "userId": phone_number, "exp": exp}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def decode_session_token(token: str) -> Identity:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthenticationRequired("Session expired")
    except jwt.InvalidTokenError:
        raise AuthenticationRequired("Invalid token")
    phone = payload.get("phoneNumber") or payload.get("sub")
    if not phone:
        raise AuthenticationRequired("Invalid token payload")
    return Identity(phone)


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        config.SESSION_COOKIE,
        token,
        max_age=int(config.SESSION_TTL.total_seconds()),
        httponly=True,
        secure=config.ENVIRONMENT == "production",
        samesite="strict",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(config.SESSION_COOKIE, path="/")


# ----------------------- Identity provider -----------------------
class FirebaseIdentityVerifier:
    def __init__(self, credentials_path: str):
        self.app = firebase_admin.initialize_app(credentials.Certificate(credentials_path), name="store-identity")

    def verify(self, id_token: str) -> str:
        """Return the verified phone number carried by a Firebase ID token."""
        try:
            claims = firebase_auth.verify_id_token(id_token, app=self.app)
        except (ValueError, FirebaseError) as e:
            logger.info("Rejected identity token: %s", e)
            raise AuthenticationRequired("Invalid identity token")
        phone = claims.get("phone_number")
        if not phone:
            raise AuthenticationRequired("Identity token carries no phone number")
        return normalize_phone(phone)


_verifier: Optional[FirebaseIdentityVerifier] = None


def get_identity_verifier() -> FirebaseIdentityVerifier:
    global _verifier
    if _verifier is None:
        if not config.FIREBASE_CREDENTIALS:
            raise ServiceUnavailable("Identity provider not configured")
        _verifier = FirebaseIdentityVerifier(config.FIREBASE_CREDENTIALS)
    return _verifier


# ----------------------- Dependencies -----------------------
def _token_from(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(config.SESSION_COOKIE)


def get_optional_identity(
    request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[Identity]:
    """Anonymous callers get None; a token that is present must be valid."""
    token = _token_from(request, credentials)
    if not token:
        return None
    return decode_session_token(token)


def get_current_identity(
    request: Request, credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Identity:
    token = _token_from(request, credentials)
    if not token:
        raise AuthenticationRequired("Authentication required")
    return decode_session_token(token)


def require_admin(identity: Identity = Depends(get_current_identity), store: DocumentStore = Depends(get_store)) -> Identity:
    if identity.phone_number in config.ADMIN_PHONE_NUMBERS:
        return identity
    user = UserService(store).get(identity.phone_number)
    if not user or not user.get("is_admin"):
        raise PermissionDenied("Admin only")
    return identity


def profile_redirect(next_path: str) -> str:
    return f"{config.PROFILE_COMPLETION_PATH}?next={quote(next_path, safe='/')}"


def require_complete_profile(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    store: DocumentStore = Depends(get_store),
) -> Identity:
    user = UserService(store).get(identity.phone_number)
    if not UserService.is_profile_complete(user):
        raise PermissionDenied("Profile incomplete", redirect=profile_redirect(request.url.path))
    return identity
