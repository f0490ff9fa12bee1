"""
Identity providers: Firebase Authentication (Admin SDK + REST) and LINE Login.
"""

from __future__ import annotations

import threading
from typing import Any, Dict

import firebase_admin
import requests
from firebase_admin import auth as firebase_auth
from flask import current_app

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
LINE_VERIFY_URL = "https://api.line.me/oauth2/v2.1/verify"
REQUEST_TIMEOUT = 15

_app_lock = threading.Lock()


class IdentityError(Exception):
    """Raised when an identity provider rejects a token or request."""


def _firebase_app() -> firebase_admin.App:
    with _app_lock:
        try:
            return firebase_admin.get_app()
        except ValueError:
            project_id = current_app.config.get("FIREBASE_PROJECT_ID")
            options = {"projectId": project_id} if project_id else None
            return firebase_admin.initialize_app(options=options)


def verify_firebase_id_token(id_token: str) -> Dict[str, Any]:
    """Verify a Firebase ID token and return its decoded claims."""
    if not id_token:
        raise IdentityError("idToken is required")
    try:
        return firebase_auth.verify_id_token(id_token, app=_firebase_app())
    except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.CertificateFetchError) as exc:
        raise IdentityError(str(exc)) from exc


def firebase_profile(decoded: Dict[str, Any]) -> Dict[str, Any]:
    """Map decoded Firebase claims onto the user columns we persist."""
    uid = decoded.get("user_id") or decoded.get("uid")
    if not uid:
        raise IdentityError("Firebase token has no uid")
    provider = (decoded.get("firebase") or {}).get("sign_in_provider")
    phone = decoded.get("phone_number")
    return {
        "uid": str(uid),
        "email": decoded.get("email"),
        "phone": phone,
        "provider": provider,
        "is_email_verified": bool(decoded.get("email_verified")) or provider == "google.com",
        "is_phone_verified": bool(phone),
    }


def _identity_toolkit(action: str, body: Dict[str, Any]) -> Dict[str, Any]:
    api_key = current_app.config.get("FIREBASE_API_KEY")
    if not api_key:
        raise IdentityError("FIREBASE_API_KEY is not configured")

    try:
        response = requests.post(
            f"{IDENTITY_TOOLKIT_URL}/accounts:{action}",
            params={"key": api_key},
            json=body,
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        raise IdentityError(f"Firebase request failed: {exc}") from exc

    try:
        data = response.json()
    except ValueError:
        data = {}
    if not response.ok:
        error = data.get("error") if isinstance(data, dict) else None
        message = error.get("message") if isinstance(error, dict) else error
        raise IdentityError(message if isinstance(message, str) else response.reason or "Firebase REST error")
    return data


def sign_up_email_password(email: str, password: str) -> Dict[str, Any]:
    return _identity_toolkit(
        "signUp", {"email": email, "password": password, "returnSecureToken": True}
    )


def send_verify_email(id_token: str) -> Dict[str, Any]:
    return _identity_toolkit("sendOobCode", {"requestType": "VERIFY_EMAIL", "idToken": id_token})


def verify_line_id_token(id_token: str) -> Dict[str, Any]:
    """Verify a LINE Login ID token with LINE's verify endpoint."""
    client_id = current_app.config.get("LINE_CHANNEL_ID")
    if not client_id:
        raise IdentityError("LINE_CHANNEL_ID is not configured")
    if not id_token:
        raise IdentityError("idToken is required")

    try:
        response = requests.post(
            LINE_VERIFY_URL,
            data={"id_token": id_token, "client_id": client_id},
            timeout=REQUEST_TIMEOUT,
        )
        data = response.json()
    except requests.RequestException as exc:
        raise IdentityError(f"LINE verify request failed: {exc}") from exc
    except ValueError as exc:
        raise IdentityError("LINE verify returned invalid JSON") from exc

    if not response.ok or data.get("error"):
        raise IdentityError(data.get("error_description") or "LINE id_token verify failed")
    if not data.get("sub") or not data.get("aud") or not data.get("iss"):
        raise IdentityError("LINE verify: insufficient token claims")
    return data
