"""
services/auth/google.py
Verification of tokens handed to us by Google Sign-In clients.

Web clients send an ID token; some mobile SDKs only hand out an OAuth
access token. ID tokens are checked against Google's tokeninfo endpoint
(audience must be our client id); anything else is tried as an access
token against the userinfo endpoint.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings

logger = logging.getLogger(__name__)

TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
VALID_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}


class GoogleTokenError(Exception):
    """The token was rejected by Google or is not meant for this app."""


@dataclass
class GoogleIdentity:
    sub: str
    email: str
    name: str
    picture: Optional[str] = None


@retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=4),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _get(url: str, **kwargs) -> httpx.Response:
    async with httpx.AsyncClient(timeout=10.0) as client:
        return await client.get(url, **kwargs)


def _identity(data: dict) -> GoogleIdentity:
    email = data.get("email")
    if not email:
        raise GoogleTokenError("Google did not return an email address")
    if str(data.get("email_verified", "true")).lower() != "true":
        raise GoogleTokenError("Google email address is not verified")
    return GoogleIdentity(
        sub=data["sub"],
        email=email.lower(),
        name=data.get("name") or email.split("@")[0],
        picture=data.get("picture"),
    )


async def _from_id_token(token: str) -> Optional[GoogleIdentity]:
    response = await _get(TOKENINFO_URL, params={"id_token": token})
    if response.status_code != 200:
        return None
    data = response.json()
    if data.get("aud") != settings.GOOGLE_CLIENT_ID:
        raise GoogleTokenError("Token was issued for another application")
    if data.get("iss") not in VALID_ISSUERS:
        raise GoogleTokenError("Token was not issued by Google")
    return _identity(data)


async def _from_access_token(token: str) -> Optional[GoogleIdentity]:
    response = await _get(USERINFO_URL, headers={"Authorization": f"Bearer {token}"})
    if response.status_code != 200:
        return None
    return _identity(response.json())


async def verify_google_token(token: str) -> GoogleIdentity:
    """Resolve a Google ID token or access token to the account behind it."""
    identity = await _from_id_token(token)
    if identity is None:
        identity = await _from_access_token(token)
    if identity is None:
        raise GoogleTokenError("Invalid Google token (rejected as ID token and access token)")
    return identity
