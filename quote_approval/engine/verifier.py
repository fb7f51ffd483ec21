from __future__ import annotations

from dataclasses import replace
import logging
from typing import Any, Protocol

from opentelemetry import trace

from quote_approval.core.models import Quote, QuoteState, Status
from quote_approval.engine import matcher
from quote_approval.engine.errors import QuotePreconditionError
from quote_approval.engine.fast_track import match_fast_track_rule
from quote_approval.engine.outcomes import (
    VerificationResult,
    apply_result,
    changes_quote,
    resolve_next_state,
)
from quote_approval.services.fetcher import DocumentFetcher, DocumentUnreachableError, FetchErrorPolicy
from quote_approval.services.resolver import IdentityResolver

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class VerificationResultWriter(Protocol):
    async def save_verification_result(
        self,
        quote: Quote,
        *,
        expected_state: QuoteState,
        result: VerificationResult,
    ) -> bool: ...


class QuoteVerifier:
    """Decides whether a quote is authorized and records the decision.

    ``evaluate`` is side-effect free and returns a tagged outcome. ``verify``
    evaluates and then performs the single write for the quote, so abandoning
    a call before it returns never leaves a partial update behind.
    """

    def __init__(
        self,
        *,
        fetcher: DocumentFetcher,
        resolver: IdentityResolver,
        writer: VerificationResultWriter | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.resolver = resolver
        self.writer = writer

    async def verify(
        self,
        quote: Quote,
        *,
        expected_quoted_uri: str | None = None,
        prefetched_body: bytes | str | None = None,
    ) -> VerificationResult:
        with tracer.start_as_current_span("quote.verify") as span:
            span.set_attribute("quote.id", quote.id)
            span.set_attribute("quote.state", quote.state.value)
            result = await self.evaluate(
                quote,
                expected_quoted_uri=expected_quoted_uri,
                prefetched_body=prefetched_body,
            )
            span.set_attribute("quote.verification.outcome", result.outcome.value)
            span.set_attribute("quote.verification.reason", result.reason)
            await self._commit(quote, result)
            return result

    async def evaluate(
        self,
        quote: Quote,
        *,
        expected_quoted_uri: str | None = None,
        prefetched_body: bytes | str | None = None,
    ) -> VerificationResult:
        rule = match_fast_track_rule(quote)
        if rule is not None:
            return VerificationResult.accepted(f"fast_track_{rule.value}")

        if not quote.approval_uri:
            if quote.quoted_status is None:
                raise QuotePreconditionError(f"quote {quote.id} has no approval uri and no quoted status")
            return VerificationResult.indeterminate("missing_approval_uri")

        try:
            document = await self._fetch_approval_document(
                quote,
                approval_uri=quote.approval_uri,
                prefetched_body=prefetched_body,
            )
        except DocumentUnreachableError as exc:
            logger.warning("approval document unreachable quote_id=%s error=%s", quote.id, exc)
            return VerificationResult.indeterminate("approval_unreachable")
        if document is None:
            # Only an already decided quote loses its approval here.
            if quote.pending:
                return VerificationResult.indeterminate("approval_unavailable")
            return VerificationResult.rejected("approval_revoked")

        if not matcher.matching_hosts(quote.approval_uri, document):
            return VerificationResult.indeterminate("approval_host_mismatch")
        if not matcher.matching_type(document):
            return VerificationResult.indeterminate("approval_type_mismatch")
        if not matcher.matching_quote_uri(document, self.resolver.uri_for(quote.status)):
            return VerificationResult.indeterminate("quoting_post_mismatch")

        imported = await self._import_quoted_status(quote, document, expected_quoted_uri)
        if imported is not None:
            candidate = replace(quote, quoted_status=imported)
            rule = match_fast_track_rule(candidate)
            if rule is not None:
                return VerificationResult.accepted(
                    f"fast_track_{rule.value}_after_import",
                    attached_quoted_status=imported,
                )
        else:
            candidate = quote

        quoted_status = candidate.quoted_status
        if quoted_status is None or not matcher.matching_quoted_post(document, self.resolver.uri_for(quoted_status)):
            return VerificationResult.indeterminate("quoted_post_mismatch", attached_quoted_status=imported)
        if not matcher.matching_quoted_author(document, self.resolver.uri_for(quoted_status.account)):
            return VerificationResult.indeterminate("quoted_author_mismatch", attached_quoted_status=imported)

        return VerificationResult.accepted("approval_verified", attached_quoted_status=imported)

    async def _fetch_approval_document(
        self,
        quote: Quote,
        *,
        approval_uri: str,
        prefetched_body: bytes | str | None,
    ) -> dict[str, Any] | None:
        if prefetched_body is not None:
            return self.fetcher.parse(prefetched_body, expected_id=approval_uri)
        return await self.fetcher.fetch(
            approval_uri,
            on_behalf_of=quote.account,
            error_policy=FetchErrorPolicy.TEMPORARY,
        )

    async def _import_quoted_status(
        self,
        quote: Quote,
        document: dict[str, Any],
        expected_quoted_uri: str | None,
    ) -> Status | None:
        if expected_quoted_uri is None or quote.quoted_status is not None:
            return None
        if matcher.interaction_target(document) == expected_quoted_uri:
            return None

        status = await self.resolver.resolve_uri(expected_quoted_uri, Status)
        if status is None:
            logger.info("quoted post import skipped quote_id=%s uri=%s", quote.id, expected_quoted_uri)
        return status

    async def _commit(self, quote: Quote, result: VerificationResult) -> None:
        if not changes_quote(quote, result):
            logger.debug(
                "quote verification left quote unchanged quote_id=%s state=%s reason=%s",
                quote.id,
                quote.state.value,
                result.reason,
            )
            return

        from_state = quote.state
        if self.writer is not None:
            saved = await self.writer.save_verification_result(quote, expected_state=from_state, result=result)
            if not saved:
                logger.warning(
                    "quote changed concurrently; verification result dropped quote_id=%s outcome=%s",
                    quote.id,
                    result.outcome.value,
                )
                return

        apply_result(quote, result)
        logger.info(
            "quote verification applied quote_id=%s from_state=%s to_state=%s reason=%s",
            quote.id,
            from_state.value,
            resolve_next_state(from_state, result.outcome).value,
            result.reason,
        )
