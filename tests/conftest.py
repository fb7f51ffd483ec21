from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import pytest

from quote_approval.core.models import Account, Quote, QuoteApprovalPolicy, QuoteState, Status
from quote_approval.engine.outcomes import VerificationResult
from quote_approval.engine.verifier import QuoteVerifier
from quote_approval.services.fetcher import FetchErrorPolicy, HttpDocumentFetcher

APPROVAL_URI = "https://remote/proof/1"
ACTIVITYSTREAMS = "https://www.w3.org/ns/activitystreams"

_UNSET: Any = object()


class FakeFetcher:
    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any] | None] = {}
        self.fetch_calls: list[dict[str, Any]] = []
        self.parse_calls: list[str] = []
        self.error: Exception | None = None
        self._parser = HttpDocumentFetcher()

    async def fetch(
        self,
        uri: str,
        *,
        on_behalf_of: Account | None,
        error_policy: FetchErrorPolicy = FetchErrorPolicy.NONE,
    ) -> dict[str, Any] | None:
        self.fetch_calls.append({"uri": uri, "on_behalf_of": on_behalf_of, "error_policy": error_policy})
        if self.error is not None:
            raise self.error
        return self.documents.get(uri)

    def parse(self, raw_body: bytes | str, *, expected_id: str) -> dict[str, Any] | None:
        self.parse_calls.append(expected_id)
        return self._parser.parse(raw_body, expected_id=expected_id)


class FakeResolver:
    def __init__(self) -> None:
        self.statuses: dict[str, Status] = {}
        self.accounts: dict[str, Account] = {}
        self.resolve_calls: list[str] = []

    def uri_for(self, entity: Account | Status) -> str:
        assert entity.uri is not None
        return entity.uri

    async def resolve_uri(self, uri: str, kind: type) -> Any:
        self.resolve_calls.append(uri)
        if kind is Status:
            return self.statuses.get(uri)
        return self.accounts.get(uri)


class FakeWriter:
    def __init__(self) -> None:
        self.saved: list[dict[str, Any]] = []
        self.conflict = False

    async def save_verification_result(
        self,
        quote: Quote,
        *,
        expected_state: QuoteState,
        result: VerificationResult,
    ) -> bool:
        if self.conflict:
            return False
        self.saved.append({"quote_id": quote.id, "expected_state": expected_state, "result": result})
        return True


@dataclass
class Scenario:
    alice: Account = field(
        default_factory=lambda: Account(id="acct-alice", username="alice", uri="https://local/users/alice")
    )
    bob: Account = field(
        default_factory=lambda: Account(
            id="acct-bob",
            username="bob",
            domain="remote",
            uri="https://remote/users/bob",
        )
    )
    carol: Account = field(
        default_factory=lambda: Account(
            id="acct-carol",
            username="carol",
            domain="elsewhere",
            uri="https://elsewhere/users/carol",
        )
    )

    def status(
        self,
        *,
        account: Account,
        uri: str,
        status_id: str,
        mentions: frozenset[str] = frozenset(),
    ) -> Status:
        return Status(
            id=status_id,
            account=account,
            uri=uri,
            text=f"post {status_id}",
            created_at=datetime(2025, 4, 4, tzinfo=timezone.utc),
            active_mention_account_ids=mentions,
            quote_approval_policy=QuoteApprovalPolicy.PUBLIC,
        )

    @property
    def quoting_status(self) -> Status:
        return self.status(account=self.alice, uri="https://local/posts/5", status_id="status-5")

    @property
    def quoted_status(self) -> Status:
        return self.status(account=self.bob, uri="https://remote/posts/9", status_id="status-9")

    def quote(
        self,
        *,
        status: Status | None = None,
        quoted_status: Status | None = _UNSET,
        approval_uri: str | None = APPROVAL_URI,
        state: QuoteState = QuoteState.PENDING,
    ) -> Quote:
        return Quote(
            id="quote-1",
            status=status if status is not None else self.quoting_status,
            approval_uri=approval_uri,
            quoted_status=self.quoted_status if quoted_status is _UNSET else quoted_status,
            state=state,
        )

    def proof(self, **overrides: Any) -> dict[str, Any]:
        document: dict[str, Any] = {
            "@context": [ACTIVITYSTREAMS, {"QuoteAuthorization": "https://w3id.org/fep/044f#QuoteAuthorization"}],
            "id": APPROVAL_URI,
            "type": "QuoteAuthorization",
            "attributedTo": "https://remote/users/bob",
            "interactingObject": "https://local/posts/5",
            "interactionTarget": "https://remote/posts/9",
        }
        document.update(overrides)
        return document


@pytest.fixture
def scenario() -> Scenario:
    return Scenario()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def writer() -> FakeWriter:
    return FakeWriter()


@pytest.fixture
def verifier(fetcher: FakeFetcher, resolver: FakeResolver, writer: FakeWriter) -> QuoteVerifier:
    return QuoteVerifier(fetcher=fetcher, resolver=resolver, writer=writer)
