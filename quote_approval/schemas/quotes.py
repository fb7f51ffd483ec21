from datetime import datetime
from typing import Literal

from pydantic import BaseModel

QuoteStateValue = Literal["pending", "accepted", "rejected"]
QuoteApprovalPolicyValue = Literal["public", "followers", "mentioned", "nobody"]


class AccountOut(BaseModel):
    id: str
    username: str
    acct: str
    uri: str


class StatusOut(BaseModel):
    id: str
    uri: str
    text: str
    account: AccountOut
    quote_approval_policy: QuoteApprovalPolicyValue | None = None
    created_at: datetime | None = None


class QuoteOut(BaseModel):
    state: QuoteStateValue
    quoted_status: StatusOut | None = None


class VerificationRequestIn(BaseModel):
    expected_quoted_uri: str | None = None
    prefetched_body: str | None = None


class VerificationRequestAccepted(BaseModel):
    request_id: str
    quote_id: str
