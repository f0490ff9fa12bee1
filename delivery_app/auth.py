from __future__ import annotations

import hmac
from functools import wraps
from typing import Any, Callable, Dict, TypeVar

import jwt
from flask import Blueprint, current_app, g, request

from . import repository
from .errors import ApiError, api_response, bad_request, unauthorized
from .identity import (
    IdentityError,
    firebase_profile,
    send_verify_email,
    sign_up_email_password,
    verify_firebase_id_token,
    verify_line_id_token,
)
from .tokens import (
    RefreshTokenError,
    mint_refresh_token,
    rotate_refresh_token,
    sign_access_token,
    verify_access_token,
)
from .utils import log_ctx

F = TypeVar("F", bound=Callable[..., object])

auth_blueprint = Blueprint("auth", __name__, url_prefix="/api")


def _bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:].strip() or None
    return None


def token_required(view: F) -> F:
    """Require a valid access token; the decoded payload is stored on ``g.auth``."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        token = _bearer_token()
        if not token:
            raise unauthorized("Missing token")
        try:
            g.auth = verify_access_token(token)
        except jwt.InvalidTokenError:
            raise unauthorized("Invalid token") from None
        return view(*args, **kwargs)

    return wrapped  # type: ignore[return-value]


def staff_required(view: F) -> F:
    """Require the shared staff token configured in ``STAFF_TOKEN``."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        expected = current_app.config.get("STAFF_TOKEN")
        token = _bearer_token()
        if not expected or not token or not hmac.compare_digest(token, expected):
            raise unauthorized("Staff token required")
        return view(*args, **kwargs)

    return wrapped  # type: ignore[return-value]


def current_user_or_404():
    auth = g.auth
    user = repository.get_user(auth.get("userId"), auth.get("uid"))
    if user is None:
        raise ApiError(404, "NOT_FOUND", "User not found")
    return user


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _issue_tokens(user) -> Dict[str, str]:
    payload = {"uid": user.firebase_uid, "userId": user.id}
    return {"accessToken": sign_access_token(payload), "refreshToken": mint_refresh_token(payload)}


def _login_with_firebase_token(id_token: str, fallback_provider: str | None = None):
    decoded = verify_firebase_id_token(id_token)
    profile = firebase_profile(decoded)
    provider = profile["provider"] or fallback_provider or "unknown"
    return repository.upsert_user(
        firebase_uid=profile["uid"],
        email=profile["email"],
        phone=profile["phone"],
        provider=provider,
        is_email_verified=profile["is_email_verified"] or provider == "google.com",
        is_phone_verified=profile["is_phone_verified"],
    )


@auth_blueprint.route("/login", methods=["POST"])
def login():
    id_token = _json_body().get("idToken")
    if not id_token or not isinstance(id_token, str):
        raise bad_request("Missing idToken")

    try:
        user = _login_with_firebase_token(id_token)
    except IdentityError as exc:
        current_app.logger.warning("login failed %s", log_ctx(req_id=g.get("req_id"), error=str(exc)))
        raise ApiError(400, "LOGIN_FAILED", "Login failed") from None

    current_app.logger.info("login success %s", log_ctx(req_id=g.get("req_id"), user_id=user.id))
    return api_response({**_issue_tokens(user), "user": repository.user_to_dict(user)}, "Login success")


@auth_blueprint.route("/login-line", methods=["POST"])
def login_line():
    id_token = _json_body().get("idToken")
    if not id_token or not isinstance(id_token, str):
        raise bad_request("Missing idToken")

    try:
        claims = verify_line_id_token(id_token)
    except IdentityError as exc:
        current_app.logger.warning("line login failed %s", log_ctx(req_id=g.get("req_id"), error=str(exc)))
        raise ApiError(400, "LOGIN_FAILED", str(exc) or "Login failed") from None

    email = claims.get("email")
    user = repository.upsert_user(
        firebase_uid=str(claims["sub"]),
        email=email,
        phone=None,
        provider="line",
        is_email_verified=bool(email),
        is_phone_verified=False,
    )
    current_app.logger.info("line login success %s", log_ctx(req_id=g.get("req_id"), user_id=user.id))
    body = {**_issue_tokens(user), "user": repository.user_to_dict(user)}
    body["profile"] = {"name": claims.get("name"), "picture": claims.get("picture")}
    return api_response(body, "Login success")


@auth_blueprint.route("/signup", methods=["POST"])
def signup():
    payload = _json_body()
    provider = payload.get("provider")
    if not provider:
        raise bad_request("Missing provider")

    current_app.logger.info(
        "signup request %s", log_ctx(req_id=g.get("req_id"), provider=provider, keys=",".join(sorted(payload)))
    )

    try:
        if provider == "password":
            email = payload.get("email")
            password = payload.get("password")
            if not email or not password:
                raise bad_request("Missing email or password")
            created = sign_up_email_password(email, password)
            id_token = created.get("idToken")
            if payload.get("sendVerifyEmail") and id_token:
                try:
                    send_verify_email(id_token)
                except IdentityError as exc:
                    current_app.logger.warning(
                        "signup verify email failed %s", log_ctx(req_id=g.get("req_id"), error=str(exc))
                    )
        elif provider in ("google", "phone"):
            id_token = payload.get("idToken")
            if not id_token:
                raise bad_request(f"Missing idToken for provider {provider}")
        else:
            raise bad_request("Unsupported provider")

        user = _login_with_firebase_token(id_token, fallback_provider=provider)
    except IdentityError as exc:
        current_app.logger.warning("signup failed %s", log_ctx(req_id=g.get("req_id"), error=str(exc)))
        raise ApiError(400, "SIGNUP_FAILED", str(exc) or "Signup failed") from None

    return api_response(
        {**_issue_tokens(user), "user": repository.user_to_dict(user, include_card=False)},
        "Signup success",
    )


@auth_blueprint.route("/refresh-token", methods=["POST"])
def refresh_token():
    old_token = _json_body().get("refreshToken")
    if not old_token or not isinstance(old_token, str):
        raise bad_request("Missing refreshToken")

    try:
        new_refresh, payload = rotate_refresh_token(old_token)
    except RefreshTokenError as exc:
        current_app.logger.info("refresh rejected %s", log_ctx(req_id=g.get("req_id"), reason=str(exc)))
        raise ApiError(400, "REFRESH_FAILED", "Failed to refresh") from None

    return api_response({"accessToken": sign_access_token(payload), "refreshToken": new_refresh})


@auth_blueprint.route("/user/send-verify-email", methods=["POST"])
def user_send_verify_email():
    id_token = _json_body().get("idToken")
    if not id_token or not isinstance(id_token, str):
        raise bad_request("Missing idToken")
    try:
        result = send_verify_email(id_token)
    except IdentityError as exc:
        raise ApiError(400, "SEND_VERIFY_FAILED", str(exc)) from None
    return api_response({"email": result.get("email")})


@auth_blueprint.route("/user/me")
@token_required
def user_me():
    user = current_user_or_404()
    data = repository.user_to_dict(user, include_card=False)
    return api_response({"user": data})


def _normalize_contact(value: Any, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise bad_request(f"Invalid {field}")
    return value.strip() or None


def _normalize_flag(value: Any, field: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    raise bad_request(f"Invalid value for {field}")


@auth_blueprint.route("/v1/account/update", methods=["POST"])
@token_required
def account_update():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise bad_request("Invalid payload")

    uid = g.auth["uid"]
    existing = repository.get_user_by_uid(uid)
    patch: Dict[str, Any] = {}

    email_changed = False
    if "email" in body:
        patch["email"] = _normalize_contact(body["email"], "email")
        email_changed = patch["email"] != (existing.email if existing else None)

    if email_changed:
        patch["is_email_verified"] = False
    elif "is_email_verified" in body:
        patch["is_email_verified"] = _normalize_flag(body["is_email_verified"], "is_email_verified")

    phone_changed = False
    if "phone" in body:
        patch["phone"] = _normalize_contact(body["phone"], "phone")
        phone_changed = patch["phone"] != (existing.phone if existing else None)

    if "is_phone_verified" in body:
        patch["is_phone_verified"] = _normalize_flag(body["is_phone_verified"], "is_phone_verified")
    elif phone_changed:
        patch["is_phone_verified"] = False

    exclude_id = existing.id if existing else None
    if email_changed and patch.get("email") and repository.is_email_taken(patch["email"], exclude_id):
        raise ApiError(409, "DUPLICATE_EMAIL", "Email already in use")
    if phone_changed and patch.get("phone") and repository.is_phone_taken(patch["phone"], exclude_id):
        raise ApiError(409, "DUPLICATE_PHONE", "Phone number already in use")

    if not patch:
        raise bad_request("No updates provided")

    user = repository.update_user_contact(uid, patch)
    current_app.logger.info(
        "account updated %s", log_ctx(req_id=g.get("req_id"), user_id=user.id, fields=",".join(sorted(patch)))
    )
    return api_response({"user": repository.user_to_dict(user)})
