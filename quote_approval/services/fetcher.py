from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
import json
import logging
from typing import Any, Protocol
from urllib.parse import urljoin

import httpx

from quote_approval.core.config import Settings
from quote_approval.core.models import Account
from quote_approval.core.urls import is_fetchable_uri

logger = logging.getLogger(__name__)

ACTIVITY_JSON_ACCEPT = (
    'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
)
PERMANENT_ABSENCE_STATUS_CODES = {404, 410}
TEMPORARY_FAILURE_STATUS_CODES = {401, 408, 429}
REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
MAX_REDIRECT_HOPS = 5


class FetchErrorPolicy(str, Enum):
    NONE = "none"
    TEMPORARY = "temporary"
    ALL = "all"


class DocumentFetchError(Exception):
    """Base document fetch error."""


class UnexpectedResponseError(DocumentFetchError):
    """Raised when the error policy asks to surface an unexpected HTTP response."""

    def __init__(self, uri: str, status_code: int) -> None:
        super().__init__(f"unexpected response status={status_code} uri={uri}")
        self.uri = uri
        self.status_code = status_code


class DocumentUnreachableError(DocumentFetchError):
    """Raised when the remote server could not be reached or gave no final answer.

    This says nothing about whether the document exists, so callers must not
    treat it as absence.
    """

    def __init__(self, uri: str, detail: str) -> None:
        super().__init__(f"document unreachable uri={uri}: {detail}")
        self.uri = uri
        self.detail = detail


class FetchSigningError(DocumentFetchError):
    """Raised when a fetch on behalf of an account cannot be signed."""


class DocumentFetcher(Protocol):
    async def fetch(
        self,
        uri: str,
        *,
        on_behalf_of: Account | None,
        error_policy: FetchErrorPolicy = FetchErrorPolicy.NONE,
    ) -> dict[str, Any] | None: ...

    def parse(self, raw_body: bytes | str, *, expected_id: str) -> dict[str, Any] | None: ...


AuthFactory = Callable[[Account], Awaitable[httpx.Auth]]


@dataclass(slots=True)
class FetchedResponse:
    status_code: int
    body: bytes | None = None


def is_temporary_failure(status_code: int) -> bool:
    return status_code >= 500 or status_code in TEMPORARY_FAILURE_STATUS_CODES


class HttpDocumentFetcher:
    """Fetches ActivityStreams documents by URI.

    ``fetch`` returns ``None`` only when the server answered and the document
    is absent or unusable. A timeout, a transport failure or a redirect chain
    that never settles raises ``DocumentUnreachableError`` instead.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        max_body_bytes: int = 1_048_576,
        user_agent: str = "quote-approval-fetcher/1.0",
        allow_insecure: bool = False,
        auth_factory: AuthFactory | None = None,
        max_redirect_hops: int = MAX_REDIRECT_HOPS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_body_bytes = max(1, max_body_bytes)
        self.user_agent = user_agent
        self.allow_insecure = allow_insecure
        self.auth_factory = auth_factory
        self.max_redirect_hops = max(0, max_redirect_hops)
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> HttpDocumentFetcher:
        return cls(
            timeout_seconds=settings.fetch_timeout_seconds,
            max_body_bytes=settings.fetch_max_body_bytes,
            user_agent=settings.fetch_user_agent,
            allow_insecure=settings.allow_insecure_fetch,
            max_redirect_hops=settings.fetch_max_redirect_hops,
            **kwargs,
        )

    async def fetch(
        self,
        uri: str,
        *,
        on_behalf_of: Account | None,
        error_policy: FetchErrorPolicy = FetchErrorPolicy.NONE,
    ) -> dict[str, Any] | None:
        if not is_fetchable_uri(uri, allow_insecure=self.allow_insecure):
            logger.info("refusing to fetch unsupported uri=%s", uri)
            return None

        auth = await self._auth_for(on_behalf_of)
        if self._client is not None:
            response = await self._get(self._client, uri, auth=auth)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=False) as temp_client:
                response = await self._get(temp_client, uri, auth=auth)

        if response.status_code != 200:
            self._raise_for_policy(uri, response.status_code, error_policy)
            logger.info("document unavailable uri=%s status=%s", uri, response.status_code)
            return None
        if response.body is None:
            logger.warning("document body too large uri=%s limit=%s", uri, self.max_body_bytes)
            return None

        return self.parse(response.body, expected_id=uri)

    def parse(self, raw_body: bytes | str, *, expected_id: str) -> dict[str, Any] | None:
        if len(raw_body) > self.max_body_bytes:
            logger.warning("document body too large expected_id=%s bytes=%s", expected_id, len(raw_body))
            return None
        try:
            document = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.info("document body is not valid json expected_id=%s", expected_id)
            return None

        if not isinstance(document, dict):
            return None
        if document.get("id") != expected_id:
            logger.info("document id mismatch expected_id=%s actual_id=%s", expected_id, document.get("id"))
            return None
        return document

    async def _auth_for(self, on_behalf_of: Account | None) -> httpx.Auth | None:
        if on_behalf_of is None:
            return None
        if self.auth_factory is None:
            raise FetchSigningError(f"no request signer configured for account id={on_behalf_of.id}")
        return await self.auth_factory(on_behalf_of)

    async def _get(
        self,
        client: httpx.AsyncClient,
        uri: str,
        *,
        auth: httpx.Auth | None,
    ) -> FetchedResponse:
        headers = {"Accept": ACTIVITY_JSON_ACCEPT, "User-Agent": self.user_agent}
        current_uri = uri
        seen_uris: set[str] = set()

        try:
            for _ in range(self.max_redirect_hops + 1):
                if current_uri in seen_uris:
                    raise DocumentUnreachableError(uri, "redirect loop detected")
                seen_uris.add(current_uri)

                async with client.stream("GET", current_uri, headers=headers, auth=auth) as response:
                    if response.status_code in REDIRECT_STATUS_CODES:
                        current_uri = self._redirect_target(uri, response)
                        continue
                    if response.status_code != 200:
                        return FetchedResponse(status_code=response.status_code)
                    return FetchedResponse(status_code=200, body=await self._read_body(response))
        except httpx.TimeoutException as exc:
            logger.warning("document fetch timed out uri=%s", uri)
            raise DocumentUnreachableError(uri, "timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("document fetch failed uri=%s error=%s", uri, exc)
            raise DocumentUnreachableError(uri, str(exc) or type(exc).__name__) from exc

        raise DocumentUnreachableError(uri, "redirect hop limit exceeded")

    def _redirect_target(self, uri: str, response: httpx.Response) -> str:
        location = response.headers.get("location")
        if not location:
            raise DocumentUnreachableError(uri, f"redirect without location status={response.status_code}")
        target = urljoin(str(response.url), location)
        if not is_fetchable_uri(target, allow_insecure=self.allow_insecure):
            raise DocumentUnreachableError(uri, f"redirect to unsupported uri={target}")
        logger.debug("following redirect uri=%s status=%s target=%s", uri, response.status_code, target)
        return target

    async def _read_body(self, response: httpx.Response) -> bytes | None:
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            return None

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > self.max_body_bytes:
                return None
        return bytes(body)

    @staticmethod
    def _raise_for_policy(uri: str, status_code: int, error_policy: FetchErrorPolicy) -> None:
        if error_policy is FetchErrorPolicy.NONE:
            return
        if error_policy is FetchErrorPolicy.ALL and status_code not in PERMANENT_ABSENCE_STATUS_CODES:
            raise UnexpectedResponseError(uri, status_code)
        if error_policy is FetchErrorPolicy.TEMPORARY and is_temporary_failure(status_code):
            raise UnexpectedResponseError(uri, status_code)
