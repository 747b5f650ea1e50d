"""OAuth2 authorization-code exchange for the voice client RPC scopes."""

import logging
from typing import Optional

import aiohttp

from ..errors import ConfigurationError, TransientError

logger = logging.getLogger(__name__)

TOKEN_URL = "https://discord.com/api/oauth2/token"
REDIRECT_URI = "http://127.0.0.1"
SCOPES = ("rpc", "rpc.voice.read")


async def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    session: Optional[aiohttp.ClientSession] = None,
    token_url: str = TOKEN_URL,
    timeout: float = 10.0,
) -> str:
    """
    Exchange an authorization code for an access token.

    Args:
        code: Code returned by the AUTHORIZE command
        client_id: Application client id
        client_secret: Application client secret
        session: HTTP session to use (a temporary one is created when None)
        token_url: Token endpoint
        timeout: Request timeout in seconds

    Returns:
        The access token

    Raises:
        ConfigurationError: if the credentials are rejected
        TransientError: on network failure or an unusable response
    """
    if not client_secret:
        raise ConfigurationError("A client secret is required for the token exchange")

    form = {
        "client_id": client_id,
        "client_secret": client_secret,
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
    }

    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout))
    try:
        async with session.post(token_url, data=form, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status in (400, 401):
                body = await response.text()
                raise ConfigurationError(f"Token exchange rejected ({response.status}): {body[:200]}")
            if response.status != 200:
                raise TransientError(f"Token exchange failed: HTTP {response.status}")
            payload = await response.json(content_type=None)
    except aiohttp.ClientError as e:
        raise TransientError(f"Token exchange failed: {e}") from e
    finally:
        if owns_session:
            await session.close()

    token = payload.get("access_token") if isinstance(payload, dict) else None
    if not token:
        raise TransientError("Token exchange response has no access_token")
    logger.debug("Obtained RPC access token")
    return token
