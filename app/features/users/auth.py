"""
Identity verification against Appwrite.

The permission engine only needs a local user id. This module turns a bearer
JWT issued by Appwrite into the Appwrite user id, and fetches the Appwrite
profile the first time a user is seen so a local row can be created.
"""
from typing import Optional

import jwt
from fastapi import HTTPException, status
from fastapi.concurrency import run_in_threadpool
from appwrite.client import Client
from appwrite.services.users import Users
from appwrite.exception import AppwriteException

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


class AppwriteClient:
    """Lazily built server-side Appwrite client shared by the process."""

    _instance: Optional[Client] = None

    @classmethod
    def get_client(cls) -> Client:
        if cls._instance is None:
            if not (config.APPWRITE_ENDPOINT and config.APPWRITE_PROJECT_ID):
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Authentication backend is not configured",
                )
            client = Client()
            client.set_endpoint(config.APPWRITE_ENDPOINT)
            client.set_project(config.APPWRITE_PROJECT_ID)
            if config.APPWRITE_API_KEY:
                client.set_key(config.APPWRITE_API_KEY)
            cls._instance = client
        return cls._instance


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_appwrite_user_id(token: str) -> str:
    """
    Decode an Appwrite JWT and return the Appwrite user id it was issued for.

    Appwrite signs the token; the signature is not checked here. Expiry is,
    and the user is later confirmed against the Appwrite API on first sight.

    Raises:
        HTTPException: 401 if the token is expired, malformed or has no userId
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": True})
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        raise _unauthorized(f"Invalid token: {e}")

    appwrite_user_id = payload.get("userId")
    if not appwrite_user_id:
        raise _unauthorized("Invalid token payload")
    return appwrite_user_id


async def get_appwrite_user(appwrite_user_id: str) -> dict:
    """
    Fetch a user profile from Appwrite.

    The SDK is synchronous, so the call runs in the threadpool.

    Raises:
        HTTPException: 401 if Appwrite does not know the user
    """
    users = Users(AppwriteClient.get_client())
    try:
        return await run_in_threadpool(users.get, appwrite_user_id)
    except AppwriteException as e:
        log.warning(f"Appwrite lookup failed for {appwrite_user_id}: {e}")
        raise _unauthorized(f"Failed to verify user: {e}")
