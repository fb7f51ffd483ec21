from __future__ import annotations

from enum import Enum

from quote_approval.core.models import Quote


class FastTrackRule(str, Enum):
    SELF_QUOTE = "self_quote"
    MENTIONED = "mentioned"

    def applies_to(self, quote: Quote) -> bool:
        quoted_status = quote.quoted_status
        if quoted_status is None:
            return False
        if self is FastTrackRule.SELF_QUOTE:
            return quote.account_id == quoted_status.account.id
        if self is FastTrackRule.MENTIONED:
            return quoted_status.actively_mentions(quote.account_id)
        return False


# Evaluated in order; the first rule that applies wins.
FAST_TRACK_RULES: tuple[FastTrackRule, ...] = (FastTrackRule.SELF_QUOTE, FastTrackRule.MENTIONED)


def match_fast_track_rule(
    quote: Quote,
    rules: tuple[FastTrackRule, ...] = FAST_TRACK_RULES,
) -> FastTrackRule | None:
    if quote.quoted_status is None:
        return None
    return next((rule for rule in rules if rule.applies_to(quote)), None)


def try_fast_track(quote: Quote) -> bool:
    return match_fast_track_rule(quote) is not None
