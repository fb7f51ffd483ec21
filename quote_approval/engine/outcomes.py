from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from quote_approval.core.models import Quote, QuoteState, Status


class VerificationOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    INDETERMINATE = "indeterminate"


@dataclass(slots=True, frozen=True)
class VerificationResult:
    outcome: VerificationOutcome
    reason: str
    attached_quoted_status: Status | None = None

    @classmethod
    def accepted(cls, reason: str, *, attached_quoted_status: Status | None = None) -> VerificationResult:
        return cls(VerificationOutcome.ACCEPTED, reason, attached_quoted_status)

    @classmethod
    def rejected(cls, reason: str) -> VerificationResult:
        return cls(VerificationOutcome.REJECTED, reason)

    @classmethod
    def indeterminate(cls, reason: str, *, attached_quoted_status: Status | None = None) -> VerificationResult:
        return cls(VerificationOutcome.INDETERMINATE, reason, attached_quoted_status)


def resolve_next_state(current: QuoteState, outcome: VerificationOutcome) -> QuoteState:
    if outcome is VerificationOutcome.ACCEPTED:
        return QuoteState.ACCEPTED
    if outcome is VerificationOutcome.REJECTED:
        return QuoteState.REJECTED
    return current


def changes_quote(quote: Quote, result: VerificationResult) -> bool:
    if result.attached_quoted_status is not None and quote.quoted_status_id != result.attached_quoted_status.id:
        return True
    return resolve_next_state(quote.state, result.outcome) is not quote.state


def apply_result(quote: Quote, result: VerificationResult) -> Quote:
    if result.attached_quoted_status is not None:
        quote.quoted_status = result.attached_quoted_status
    quote.state = resolve_next_state(quote.state, result.outcome)
    return quote
