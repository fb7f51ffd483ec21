from __future__ import annotations

from typing import Any

from quote_approval.core.jsonld import equals_or_includes, supported_context, value_or_id
from quote_approval.core.urls import same_authority

QUOTE_AUTHORIZATION_TYPE = "QuoteAuthorization"


def attributed_to(document: dict[str, Any]) -> str | None:
    return value_or_id(document.get("attributedTo"))


def interacting_object(document: dict[str, Any]) -> str | None:
    return value_or_id(document.get("interactingObject"))


def interaction_target(document: dict[str, Any]) -> str | None:
    return value_or_id(document.get("interactionTarget"))


def matching_hosts(approval_uri: str, document: dict[str, Any]) -> bool:
    return same_authority(approval_uri, attributed_to(document))


def matching_type(document: dict[str, Any]) -> bool:
    return supported_context(document) and equals_or_includes(document.get("type"), QUOTE_AUTHORIZATION_TYPE)


def matching_quote_uri(document: dict[str, Any], quoting_status_uri: str) -> bool:
    return interacting_object(document) == quoting_status_uri


def matching_quoted_post(document: dict[str, Any], quoted_status_uri: str | None) -> bool:
    if quoted_status_uri is None:
        return False
    return interaction_target(document) == quoted_status_uri


def matching_quoted_author(document: dict[str, Any], quoted_account_uri: str | None) -> bool:
    if quoted_account_uri is None:
        return False
    return attributed_to(document) == quoted_account_uri
