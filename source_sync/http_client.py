"""Thin aiohttp wrapper used by the HTTP polling engine."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from source_sync.errors import TransientError, ValidationError
from source_sync.models import CONTENT_TYPE_FORM, RequestOptions
from source_sync.templating import expand_template, expand_value

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")
TRANSIENT_RETRY_DELAY = 0.5  # seconds


def ensure_protocol(url: str) -> str:
    """Prefix ``https://`` when *url* carries no scheme."""
    url = url.strip()
    if "://" in url:
        return url
    return f"https://{url}"


@dataclass
class PreparedRequest:
    """A fully expanded request ready to send."""
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)
    data: Any = None


@dataclass
class HttpResponse:
    status: int
    body: str
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status < 400


def is_form_encoded(content_type: str | None) -> bool:
    return CONTENT_TYPE_FORM in (content_type or "").lower()


def validate_body(body: Any, content_type: str | None) -> None:
    """Raise ValidationError when *body* cannot be sent as *content_type*."""
    if body is None or isinstance(body, str):
        return
    if is_form_encoded(content_type) and not isinstance(body, dict):
        raise ValidationError("Form body must be an object")


def prepare_request(
    url: str,
    method: str = "GET",
    options: RequestOptions | None = None,
    at: float | None = None,
) -> PreparedRequest:
    """Expand placeholders and encode the body for *options*."""
    options = options or RequestOptions()
    variables = options.variables
    secret = options.totp_secret
    method = (method or "GET").upper()

    headers = expand_value(dict(options.headers), variables, secret, at)
    params = expand_value(dict(options.query_params), variables, secret, at)
    prepared = PreparedRequest(
        method=method,
        url=ensure_protocol(expand_template(url, variables, secret, at)),
        headers=headers,
        params=params,
    )

    body = options.body
    if method in BODY_METHODS and body not in (None, ""):
        body = expand_value(body, variables, secret, at)
        validate_body(body, options.content_type)
        if isinstance(body, str):
            prepared.data = body
        elif is_form_encoded(options.content_type):
            prepared.data = {str(k): "" if v is None else str(v) for k, v in body.items()}
        else:
            prepared.data = json.dumps(body)
        if not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = options.content_type
    return prepared


class HttpClient:
    """Shared aiohttp session with a fixed timeout and one transient retry."""

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str = "",
        transient_retry_delay: float = TRANSIENT_RETRY_DELAY,
    ):
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._user_agent = user_agent
        self._transient_retry_delay = transient_retry_delay
        self._session: aiohttp.ClientSession | None = None
        self._closed = False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise TransientError("HTTP client is closed")
        if self._session is None or self._session.closed:
            headers = {"User-Agent": self._user_agent} if self._user_agent else None
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)
        return self._session

    async def send(self, request: PreparedRequest) -> HttpResponse:
        """Send *request*; raises TransientError or ValidationError.

        Connection drops and timeouts get one immediate retry after a short
        pause; HTTP error statuses are returned, not raised.
        """
        try:
            return await self._send_once(request)
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
            logger.debug(
                "Transient error for %s %s (%s); retrying once",
                request.method,
                request.url,
                _describe(exc),
            )
        await asyncio.sleep(self._transient_retry_delay)
        try:
            return await self._send_once(request)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientError(_describe(exc)) from exc

    async def _send_once(self, request: PreparedRequest) -> HttpResponse:
        session = await self._get_session()
        try:
            async with session.request(
                request.method,
                request.url,
                headers=request.headers or None,
                params=request.params or None,
                data=request.data,
            ) as resp:
                body = await resp.text(errors="replace")
                return HttpResponse(status=resp.status, body=body, reason=resp.reason or "")
        except aiohttp.InvalidURL as exc:
            raise ValidationError(f"Invalid URL: {request.url}") from exc
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError):
            raise
        except aiohttp.ClientError as exc:
            raise TransientError(_describe(exc)) from exc

    async def close(self) -> None:
        self._closed = True
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Request timed out"
    return str(exc) or exc.__class__.__name__
