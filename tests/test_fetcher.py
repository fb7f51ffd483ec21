from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from quote_approval.core.models import Account
from quote_approval.services.fetcher import (
    DocumentUnreachableError,
    FetchErrorPolicy,
    FetchSigningError,
    HttpDocumentFetcher,
    UnexpectedResponseError,
)

PROOF_URI = "https://remote/proof/1"
ALICE = Account(id="acct-alice", username="alice")


def _proof(**overrides: Any) -> dict[str, Any]:
    document = {
        "@context": "https://www.w3.org/ns/activitystreams",
        "id": PROOF_URI,
        "type": "QuoteAuthorization",
    }
    document.update(overrides)
    return document


def _fetch(
    handler,
    *,
    uri: str = PROOF_URI,
    on_behalf_of: Account | None = None,
    error_policy: FetchErrorPolicy = FetchErrorPolicy.NONE,
    **fetcher_kwargs: Any,
) -> dict[str, Any] | None:
    async def run() -> dict[str, Any] | None:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as client:
            fetcher = HttpDocumentFetcher(client=client, **fetcher_kwargs)
            return await fetcher.fetch(uri, on_behalf_of=on_behalf_of, error_policy=error_policy)

    return asyncio.run(run())


def test_fetch_returns_document_with_matching_id() -> None:
    captured: dict[str, str] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["accept"] = request.headers["accept"]
        captured["user_agent"] = request.headers["user-agent"]
        return httpx.Response(200, json=_proof(), request=request)

    document = _fetch(handler, user_agent="quote-approval-test/1.0")

    assert document is not None
    assert document["type"] == "QuoteAuthorization"
    assert "application/activity+json" in captured["accept"]
    assert captured["user_agent"] == "quote-approval-test/1.0"


def test_fetch_rejects_document_with_foreign_id() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_proof(id="https://remote/proof/2"), request=request)

    assert _fetch(handler) is None


def test_fetch_treats_not_found_as_unavailable_under_temporary_policy() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, request=request)

    assert _fetch(handler, error_policy=FetchErrorPolicy.TEMPORARY) is None


def test_fetch_raises_on_server_error_under_temporary_policy() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, request=request)

    with pytest.raises(UnexpectedResponseError) as exc_info:
        _fetch(handler, error_policy=FetchErrorPolicy.TEMPORARY)

    assert exc_info.value.status_code == 503
    assert _fetch(handler, error_policy=FetchErrorPolicy.NONE) is None


def test_fetch_raises_on_forbidden_only_under_all_policy() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, request=request)

    assert _fetch(handler, error_policy=FetchErrorPolicy.TEMPORARY) is None
    with pytest.raises(UnexpectedResponseError):
        _fetch(handler, error_policy=FetchErrorPolicy.ALL)


@pytest.mark.parametrize(
    "error",
    [
        httpx.ConnectTimeout("timed out"),
        httpx.ReadTimeout("timed out"),
        httpx.ConnectError("connection refused"),
    ],
)
def test_network_failures_raise_unreachable_under_every_policy(error: Exception) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise error

    for policy in FetchErrorPolicy:
        with pytest.raises(DocumentUnreachableError) as exc_info:
            _fetch(handler, error_policy=policy)
        assert exc_info.value.uri == PROOF_URI


def test_fetch_follows_redirects_and_checks_requested_id() -> None:
    seen: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.path == "/proof/1":
            return httpx.Response(301, headers={"Location": "/proof/1b"}, request=request)
        return httpx.Response(200, json=_proof(), request=request)

    assert _fetch(handler) == _proof()
    assert seen == [PROOF_URI, "https://remote/proof/1b"]


def test_redirect_to_document_with_other_id_is_rejected() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/proof/1":
            return httpx.Response(302, headers={"Location": "https://remote/proof/1b"}, request=request)
        return httpx.Response(200, json=_proof(id="https://remote/proof/1b"), request=request)

    assert _fetch(handler) is None


def test_unsettled_redirects_raise_unreachable() -> None:
    async def loop_handler(request: httpx.Request) -> httpx.Response:
        target = "/proof/2" if request.url.path == "/proof/1" else "/proof/1"
        return httpx.Response(307, headers={"Location": target}, request=request)

    async def chain_handler(request: httpx.Request) -> httpx.Response:
        hop = int(request.url.params.get("hop", "0"))
        return httpx.Response(302, headers={"Location": f"/proof/1?hop={hop + 1}"}, request=request)

    async def bare_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(301, request=request)

    async def downgrade_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(301, headers={"Location": "http://remote/proof/1"}, request=request)

    for handler in (loop_handler, chain_handler, bare_handler, downgrade_handler):
        with pytest.raises(DocumentUnreachableError):
            _fetch(handler, error_policy=FetchErrorPolicy.TEMPORARY, max_redirect_hops=3)


def test_fetch_refuses_plain_http_by_default() -> None:
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json=_proof(id="http://remote/proof/1"), request=request)

    assert _fetch(handler, uri="http://remote/proof/1") is None
    assert calls == []
    assert _fetch(handler, uri="http://remote/proof/1", allow_insecure=True) is not None


def test_fetch_applies_auth_for_quoting_account() -> None:
    seen_accounts: list[Account] = []

    async def auth_factory(account: Account) -> httpx.Auth:
        seen_accounts.append(account)
        return httpx.BasicAuth(account.username, "secret")

    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"].startswith("Basic ")
        return httpx.Response(200, json=_proof(), request=request)

    assert _fetch(handler, on_behalf_of=ALICE, auth_factory=auth_factory) is not None
    assert seen_accounts == [ALICE]


def test_fetch_on_behalf_of_account_requires_signer() -> None:
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, json=_proof(), request=request)

    with pytest.raises(FetchSigningError):
        _fetch(handler, on_behalf_of=ALICE)
    assert calls == []


def test_fetch_stops_reading_oversized_bodies() -> None:
    body = json.dumps(_proof(padding="x" * 500)).encode("utf-8")

    async def declared_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body, request=request)

    async def streamed_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=httpx.ByteStream(body), request=request)

    assert _fetch(declared_handler, max_body_bytes=128) is None
    assert _fetch(streamed_handler, max_body_bytes=128) is None
    assert _fetch(streamed_handler, max_body_bytes=len(body)) is not None


def test_parse_rejects_oversized_and_malformed_bodies() -> None:
    fetcher = HttpDocumentFetcher(max_body_bytes=64)
    body = json.dumps(_proof(padding="x" * 100))

    assert fetcher.parse(body, expected_id=PROOF_URI) is None
    assert HttpDocumentFetcher().parse("{not json", expected_id=PROOF_URI) is None
    assert HttpDocumentFetcher().parse("[]", expected_id=PROOF_URI) is None
    assert HttpDocumentFetcher().parse(json.dumps(_proof()).encode("utf-8"), expected_id=PROOF_URI) == _proof()
