from __future__ import annotations

from typing import Any, Protocol

from quote_approval.core.models import Quote
from quote_approval.engine.verifier import QuoteVerifier


class QuoteLoader(Protocol):
    async def get_quote(self, quote_id: str) -> Quote: ...


async def execute_verify_quote(
    request: dict[str, Any],
    *,
    repository: QuoteLoader,
    verifier: QuoteVerifier,
) -> dict[str, Any]:
    quote_id = _as_text(request.get("quote_id"))
    if not quote_id:
        return {
            "handled": True,
            "request_id": request.get("id"),
            "quote_id": None,
            "reason": "missing_quote_id",
        }

    quote = await repository.get_quote(quote_id)
    from_state = quote.state
    result = await verifier.verify(
        quote,
        expected_quoted_uri=_as_text(request.get("expected_quoted_uri")),
        prefetched_body=_as_body(request.get("prefetched_body")),
    )
    return {
        "handled": True,
        "request_id": request.get("id"),
        "quote_id": quote.id,
        "outcome": result.outcome.value,
        "reason": result.reason,
        "from_state": from_state.value,
        "state": quote.state.value,
        "quoted_status_id": quote.quoted_status_id,
    }


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_body(value: Any) -> str | bytes | None:
    if isinstance(value, (str, bytes)) and value:
        return value
    return None
