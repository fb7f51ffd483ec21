from fastapi import APIRouter, Depends, HTTPException, status

from quote_approval.core.config import Settings, get_settings
from quote_approval.core.security import get_machine_principal
from quote_approval.schemas.quotes import QuoteOut, VerificationRequestAccepted, VerificationRequestIn
from quote_approval.services.presenter import present_quote
from quote_approval.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from quote_approval.services.resolver import RepositoryIdentityResolver

router = APIRouter()


def get_identity_resolver(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> RepositoryIdentityResolver:
    return RepositoryIdentityResolver(repository, local_domain=settings.local_domain)


@router.get("/{quote_id}", response_model=QuoteOut)
async def get_quote(
    quote_id: str,
    repository=Depends(get_repository),
    resolver=Depends(get_identity_resolver),
) -> QuoteOut:
    try:
        quote = await repository.get_quote(quote_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return present_quote(quote, resolver)


@router.post(
    "/{quote_id}/verifications",
    response_model=VerificationRequestAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_verification(
    quote_id: str,
    payload: VerificationRequestIn,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> VerificationRequestAccepted:
    try:
        principal.require_scopes({"quotes:verify"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        request_id = await repository.enqueue_verification_request(
            quote_id=quote_id,
            expected_quoted_uri=payload.expected_quoted_uri,
            prefetched_body=payload.prefetched_body,
            requested_by=principal.subject,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return VerificationRequestAccepted(request_id=request_id, quote_id=quote_id)
