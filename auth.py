"""
Authentication

Password hashing, JWT issue/verify, the request dependencies that attach the
caller to a route, and the account flows (register, login with lockout and
TOTP second factor, refresh token rotation, logout).
"""

import hashlib
import logging
import secrets
import uuid
from datetime import timedelta
from typing import Optional

import bcrypt
import jwt
import pyotp
from fastapi import Depends, Request
from pymongo import ReturnDocument

import config
from database import create_document, get_db, to_object_id, utcnow
from errors import AppError, BadRequestError, ForbiddenError, LockedError, UnauthorizedError
from schemas import User

logger = logging.getLogger(__name__)

BACKUP_CODE_COUNT = 10
TOTP_WINDOW = 2

# Fields never sent back to a client
PRIVATE_USER_FIELDS = ("password", "two_factor_secret", "backup_codes", "refresh_tokens")


# -----------------------------
# Passwords and tokens
# -----------------------------

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def generate_tokens(user_id: str) -> dict:
    now = utcnow()
    access_token = jwt.encode(
        {
            "sub": user_id,
            "type": "access",
            "iat": now,
            "exp": now + timedelta(minutes=config.JWT_EXPIRES_MINUTES),
        },
        config.JWT_SECRET,
        algorithm="HS256",
    )
    refresh_token = jwt.encode(
        {
            "sub": user_id,
            "type": "refresh",
            # two refreshes within the same second must still differ
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + timedelta(days=config.JWT_REFRESH_EXPIRES_DAYS),
        },
        config.JWT_REFRESH_SECRET,
        algorithm="HS256",
    )
    return {"access_token": access_token, "refresh_token": refresh_token}


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Access token expired", code="TOKEN_EXPIRED")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid access token")
    if payload.get("type") != "access":
        raise UnauthorizedError("Invalid access token")
    return payload


def public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}


def is_locked(user: dict) -> bool:
    lock_until = user.get("lock_until")
    return lock_until is not None and lock_until > utcnow()


# -----------------------------
# Dependencies
# -----------------------------

def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):]


def get_current_user(request: Request, db=Depends(get_db)) -> dict:
    token = _bearer_token(request)
    if not token:
        raise UnauthorizedError("Access token required")

    payload = decode_access_token(token)
    user = db["user"].find_one({"_id": to_object_id(payload["sub"], "user id")})
    if not user:
        raise UnauthorizedError("User not found")
    if is_locked(user):
        raise LockedError("Account is temporarily locked")
    return user


def get_optional_user(request: Request, db=Depends(get_db)) -> Optional[dict]:
    try:
        return get_current_user(request, db)
    except AppError:
        return None


def require_role(*roles):
    def checker(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in roles:
            raise ForbiddenError("Insufficient permissions")
        return user

    return checker


# -----------------------------
# Account flows
# -----------------------------

def _store_refresh_token(db, user_id, token: str):
    db["user"].update_one(
        {"_id": user_id},
        {"$push": {"refresh_tokens": {"token": token, "created_at": utcnow()}}},
    )


def register(db, name: str, email: str, password: str) -> tuple[dict, dict]:
    email = email.lower()
    if db["user"].find_one({"email": email}):
        raise BadRequestError("User already exists with this email")

    record = User(name=name, email=email, password=hash_password(password))
    user_id = create_document(db, "user", record.model_dump())
    tokens = generate_tokens(user_id)
    _store_refresh_token(db, to_object_id(user_id), tokens["refresh_token"])
    logger.info("Registered user %s", user_id)
    user = db["user"].find_one({"_id": to_object_id(user_id)})
    return user, tokens


def _register_failed_attempt(db, user: dict):
    now = utcnow()
    # previous lock expired, start counting again
    restarted = db["user"].update_one(
        {"_id": user["_id"], "lock_until": {"$ne": None, "$lte": now}},
        {"$set": {"login_attempts": 1, "lock_until": None}},
    )
    if restarted.modified_count:
        return

    counted = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$inc": {"login_attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if counted is None or counted["login_attempts"] < config.MAX_LOGIN_ATTEMPTS:
        return

    locked = db["user"].update_one(
        {"_id": user["_id"], "$or": [{"lock_until": None}, {"lock_until": {"$lte": now}}]},
        {"$set": {"lock_until": now + timedelta(minutes=config.LOCK_MINUTES)}},
    )
    if locked.modified_count:
        logger.warning("Locking account %s after %d failed logins", user["_id"], counted["login_attempts"])


def _consume_backup_code(db, user: dict, code: str) -> bool:
    digest = hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()
    result = db["user"].update_one(
        {"_id": user["_id"], "backup_codes": digest},
        {"$pull": {"backup_codes": digest}},
    )
    return result.modified_count == 1


def login(db, email: str, password: str, two_factor_code: Optional[str] = None) -> dict:
    """Authenticate a user.

    Returns {"requires_two_factor": True} when the account has 2FA enabled and
    no code was supplied, otherwise {"user": ..., "tokens": ...}.
    """
    user = db["user"].find_one({"email": email.lower()})

    if not user or not verify_password(password, user["password"]):
        if user:
            _register_failed_attempt(db, user)
        logger.info("Failed login for %s", email)
        raise UnauthorizedError("Invalid email or password")

    if is_locked(user):
        raise LockedError("Account is temporarily locked due to too many failed login attempts")

    if user.get("two_factor_enabled"):
        if not two_factor_code:
            return {"requires_two_factor": True}
        totp = pyotp.TOTP(user["two_factor_secret"])
        if not totp.verify(two_factor_code, valid_window=TOTP_WINDOW):
            if not _consume_backup_code(db, user, two_factor_code):
                _register_failed_attempt(db, user)
                raise UnauthorizedError("Invalid 2FA code")
            logger.info("Backup code used by user %s", user["_id"])

    tokens = generate_tokens(str(user["_id"]))
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"login_attempts": 0, "lock_until": None, "last_login": utcnow()},
            "$push": {"refresh_tokens": {"token": tokens["refresh_token"], "created_at": utcnow()}},
        },
    )
    return {"user": db["user"].find_one({"_id": user["_id"]}), "tokens": tokens}


def refresh(db, refresh_token: str) -> dict:
    """Rotate a refresh token. The old one stops working."""
    try:
        payload = jwt.decode(refresh_token, config.JWT_REFRESH_SECRET, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid refresh token")
    if payload.get("type") != "refresh":
        raise UnauthorizedError("Invalid refresh token")

    user = db["user"].find_one({"_id": to_object_id(payload["sub"], "user id")})
    if not user:
        raise UnauthorizedError("User not found")

    tokens = generate_tokens(str(user["_id"]))
    # pull only if still present, so a replayed token can't rotate twice
    result = db["user"].update_one(
        {"_id": user["_id"], "refresh_tokens.token": refresh_token},
        {"$pull": {"refresh_tokens": {"token": refresh_token}}},
    )
    if result.modified_count != 1:
        raise UnauthorizedError("Invalid refresh token")
    _store_refresh_token(db, user["_id"], tokens["refresh_token"])
    return tokens


def logout(db, user: dict, refresh_token: Optional[str] = None):
    if refresh_token:
        update = {"$pull": {"refresh_tokens": {"token": refresh_token}}}
    else:
        # every device
        update = {"$set": {"refresh_tokens": []}}
    db["user"].update_one({"_id": user["_id"]}, update)


def setup_two_factor(db, user: dict) -> dict:
    if user.get("two_factor_enabled"):
        raise BadRequestError("2FA is already enabled")

    secret = pyotp.random_base32()
    backup_codes = [secrets.token_hex(4).upper() for _ in range(BACKUP_CODE_COUNT)]
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {
                "two_factor_secret": secret,
                "backup_codes": [hashlib.sha256(c.encode("utf-8")).hexdigest() for c in backup_codes],
            }
        },
    )
    uri = pyotp.TOTP(secret).provisioning_uri(name=user["email"], issuer_name=config.TOTP_ISSUER)
    return {"secret": secret, "otpauth_url": uri, "backup_codes": backup_codes}


def enable_two_factor(db, user: dict, token: str):
    secret = user.get("two_factor_secret")
    if not secret:
        raise BadRequestError("2FA setup not initiated")
    if not pyotp.TOTP(secret).verify(token, valid_window=TOTP_WINDOW):
        raise BadRequestError("Invalid 2FA code")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"two_factor_enabled": True}})
