"""REST calls against the relay server: create and look up sessions."""

from __future__ import annotations

import logging
import platform
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from termote import __version__
from termote.relay.errors import LOGIN_HINT, ApiError, FatalError

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/api/terminal/sessions"
REQUEST_TIMEOUT = 15.0


class AgentInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    connected: bool = False
    shell: str | None = None
    version: str | None = None
    platform: str | None = None


class RemoteSession(BaseModel):
    """A session as the server reports it."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    name: str | None = None
    agent: AgentInfo = Field(default_factory=AgentInfo)
    clients: int = 0
    created_at: str | None = Field(default=None, alias="createdAt")
    updated_at: str | None = Field(default=None, alias="updatedAt")


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@retry(
    retry=retry_if_exception_type((httpx.ConnectError, httpx.ConnectTimeout)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _request(
    client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
) -> httpx.Response:
    """Send one request, retrying only when the server could not be reached."""
    return await client.request(method, url, **kwargs)


async def create_session(
    server_url: str,
    token: str,
    shell: str,
    name: str | None = None,
    version: str = __version__,
    agent_platform: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Register a new terminal session and return its id.

    Raises:
        ApiError: The server refused or failed the request.
        httpx.ConnectError: The server could not be reached after retries.
    """
    url = f"{server_url}{SESSIONS_PATH}"
    payload = {
        "name": name,
        "shell": shell,
        "version": version,
        "platform": agent_platform or platform.system().lower(),
    }
    async with _client(client) as http:
        res = await _request(http, "POST", url, json=payload, headers=_auth_headers(token))

    if res.is_error:
        if res.status_code == 401:
            raise ApiError(LOGIN_HINT, res.status_code)
        if res.status_code == 404:
            raise ApiError(
                f"API endpoint not found: {url}\n\n"
                "The server may not be running or the API has changed.",
                res.status_code,
            )
        if res.status_code >= 500:
            raise ApiError("Server error. Please try again later.", res.status_code)
        raise ApiError(
            f"Failed to create session (HTTP {res.status_code}): {res.reason_phrase}",
            res.status_code,
        )

    try:
        data = res.json()
    except ValueError as e:
        raise ApiError(f"Unexpected response from server: {e}") from e
    session_id = data.get("sessionId") or data.get("id")
    if not session_id:
        raise ApiError("Server response did not include a session id")
    logger.info("Created session %s", session_id)
    return session_id


async def fetch_session(
    server_url: str,
    token: str,
    session_id: str,
    client: httpx.AsyncClient | None = None,
) -> RemoteSession | None:
    """Look up a session; None when it cannot be determined.

    Definite answers from the server (bad request, bad credentials, no such
    session, server failure) are fatal for the caller.
    """
    url = f"{server_url}{SESSIONS_PATH}/{session_id}"
    try:
        async with _client(client) as http:
            res = await _request(http, "GET", url, headers=_auth_headers(token))
    except httpx.HTTPError as e:
        logger.debug("Session lookup failed: %s", e)
        return None

    if res.status_code == 400:
        raise FatalError("Invalid request parameters. Please check your session ID.")
    if res.status_code == 401:
        raise FatalError(LOGIN_HINT)
    if res.status_code == 404:
        raise FatalError(
            f"Session not found: {session_id[:8]}\n\n"
            "The session may have been deleted or expired."
        )
    if res.status_code >= 500:
        raise FatalError("Server error. Please try again later.")
    if res.is_error:
        return None

    try:
        return RemoteSession.model_validate(res.json())
    except ValueError as e:
        logger.debug("Unexpected session payload: %s", e)
        return None


@asynccontextmanager
async def _client(client: httpx.AsyncClient | None) -> AsyncIterator[httpx.AsyncClient]:
    """Use the caller's client as-is, or own a short-lived one."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as owned:
        yield owned
