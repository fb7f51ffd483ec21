from __future__ import annotations

from quote_approval.core.models import Account, Quote, Status
from quote_approval.schemas.quotes import AccountOut, QuoteOut, StatusOut
from quote_approval.services.resolver import IdentityResolver


def present_account(account: Account, resolver: IdentityResolver) -> AccountOut:
    return AccountOut(
        id=account.id,
        username=account.username,
        acct=account.acct,
        uri=resolver.uri_for(account),
    )


def present_status(status: Status, resolver: IdentityResolver) -> StatusOut:
    policy = status.quote_approval_policy
    return StatusOut(
        id=status.id,
        uri=resolver.uri_for(status),
        text=status.text,
        account=present_account(status.account, resolver),
        quote_approval_policy=policy.value if policy is not None else None,
        created_at=status.created_at,
    )


def present_quote(quote: Quote, resolver: IdentityResolver) -> QuoteOut:
    quoted_status = quote.quoted_status
    return QuoteOut(
        state=quote.state.value,
        quoted_status=present_status(quoted_status, resolver) if quoted_status is not None else None,
    )
