from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class QuoteState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class QuoteApprovalPolicy(str, Enum):
    PUBLIC = "public"
    FOLLOWERS = "followers"
    MENTIONED = "mentioned"
    NOBODY = "nobody"


@dataclass(slots=True, frozen=True)
class Account:
    id: str
    username: str
    domain: str | None = None
    uri: str | None = None

    @property
    def local(self) -> bool:
        return self.domain is None

    @property
    def acct(self) -> str:
        return self.username if self.local else f"{self.username}@{self.domain}"


@dataclass(slots=True, frozen=True)
class Status:
    id: str
    account: Account
    uri: str | None = None
    text: str = ""
    created_at: datetime | None = None
    active_mention_account_ids: frozenset[str] = field(default_factory=frozenset)
    quote_approval_policy: QuoteApprovalPolicy | None = None

    @property
    def local(self) -> bool:
        return self.account.local

    def actively_mentions(self, account_id: str) -> bool:
        return account_id in self.active_mention_account_ids


@dataclass(slots=True)
class Quote:
    """A claim that ``status`` quotes ``quoted_status``.

    ``quoted_status`` stays unset until the quoted post is known locally, and
    ``approval_uri`` is only present for quotes that need a remote proof.
    """

    id: str
    status: Status
    approval_uri: str | None = None
    quoted_status: Status | None = None
    state: QuoteState = QuoteState.PENDING

    @property
    def account(self) -> Account:
        return self.status.account

    @property
    def account_id(self) -> str:
        return self.status.account.id

    @property
    def quoted_status_id(self) -> str | None:
        return self.quoted_status.id if self.quoted_status is not None else None

    @property
    def quoted_account(self) -> Account | None:
        return self.quoted_status.account if self.quoted_status is not None else None

    @property
    def quoted_account_id(self) -> str | None:
        return self.quoted_status.account.id if self.quoted_status is not None else None

    @property
    def pending(self) -> bool:
        return self.state is QuoteState.PENDING
