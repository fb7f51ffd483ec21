from __future__ import annotations

import asyncio
import json
from typing import Any

from quote_approval.core.config import Settings
from quote_approval.core.models import Quote
from quote_approval.services.fetcher import HttpDocumentFetcher
from quote_approval.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
)
from quote_approval.services.resolver import RepositoryIdentityResolver
from quote_approval.services.signing import AccountSigningAuthFactory
from quote_approval.worker import build_quote_verifier, process_verification_requests


class FakeQueueRepository:
    def __init__(self, quotes: dict[str, Quote], lost_leases: set[str]) -> None:
        self.quotes = quotes
        self.lost_leases = lost_leases
        self.completed: list[dict[str, Any]] = []

    async def get_quote(self, quote_id: str) -> Quote:
        quote = self.quotes.get(quote_id)
        if quote is None:
            raise RepositoryNotFoundError("quote not found")
        return quote

    async def complete_verification_request(self, request_id: str, **kwargs: Any) -> None:
        if request_id in self.lost_leases:
            raise RepositoryConflictError("verification request is not claimed")
        self.completed.append({"id": request_id, **kwargs})


def test_build_quote_verifier_wires_settings_and_repository() -> None:
    settings = Settings(
        local_domain="Local.Example",
        fetch_timeout_seconds=2.5,
        fetch_max_redirect_hops=2,
        allow_insecure_fetch=True,
        instance_actor_username="relay",
    )
    repository = PostgresRepository(database_url=None, min_pool_size=1, max_pool_size=2)

    verifier = build_quote_verifier(settings, repository)

    assert isinstance(verifier.fetcher, HttpDocumentFetcher)
    assert verifier.fetcher.timeout_seconds == 2.5
    assert verifier.fetcher.max_redirect_hops == 2
    assert verifier.fetcher.allow_insecure is True
    assert isinstance(verifier.fetcher.auth_factory, AccountSigningAuthFactory)
    assert verifier.fetcher.auth_factory.key_store is repository
    assert verifier.fetcher.auth_factory.instance_actor_username == "relay"
    assert isinstance(verifier.resolver, RepositoryIdentityResolver)
    assert verifier.resolver.local_domain == "local.example"
    assert verifier.writer is repository


def test_lost_lease_does_not_stop_the_rest_of_the_batch(scenario, fetcher, verifier) -> None:
    quote = scenario.quote()
    repository = FakeQueueRepository({quote.id: quote}, lost_leases={"request-1"})
    body = json.dumps(scenario.proof())
    requests = [
        {"id": "request-1", "quote_id": quote.id, "prefetched_body": body},
        {"id": "request-2", "quote_id": "missing"},
        {"id": "request-3", "quote_id": quote.id, "prefetched_body": body},
    ]

    asyncio.run(process_verification_requests(requests, repository=repository, verifier=verifier))

    assert [entry["id"] for entry in repository.completed] == ["request-2", "request-3"]
    assert repository.completed[0]["status"] == "failed"
    assert repository.completed[0]["error_json"]["error_type"] == "RepositoryNotFoundError"
    assert repository.completed[1]["status"] == "done"
    assert repository.completed[1]["result_json"]["state"] == "accepted"
