from __future__ import annotations

import base64
from collections.abc import Generator
from email.utils import formatdate
import logging
from typing import Protocol

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
import httpx

from quote_approval.core.models import Account
from quote_approval.services.fetcher import FetchSigningError

logger = logging.getLogger(__name__)

SIGNED_HEADERS = ("(request-target)", "host", "date", "accept")


class HttpSignatureAuth(httpx.Auth):
    """Signs outgoing requests with an RSA-SHA256 HTTP signature.

    Every request the client sends is signed again, so redirect hops carry
    their own signature.
    """

    def __init__(self, *, key_id: str, private_key: rsa.RSAPrivateKey) -> None:
        self.key_id = key_id
        self.private_key = private_key

    @classmethod
    def from_pem(cls, *, key_id: str, private_key_pem: str) -> HttpSignatureAuth:
        try:
            key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
        except (TypeError, ValueError) as exc:
            raise FetchSigningError(f"invalid signing key for key_id={key_id}") from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise FetchSigningError(f"signing key is not an RSA key for key_id={key_id}")
        return cls(key_id=key_id, private_key=key)

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers.setdefault("Date", formatdate(usegmt=True))
        request.headers["Signature"] = self.signature_header(request)
        yield request

    def signature_header(self, request: httpx.Request) -> str:
        signed_headers = [name for name in SIGNED_HEADERS if name == "(request-target)" or name in request.headers]
        signature = self.private_key.sign(
            signing_string(request, signed_headers).encode("utf-8"),
            padding.PKCS1v15(),
            hashes.SHA256(),
        )
        return (
            f'keyId="{self.key_id}",algorithm="rsa-sha256",'
            f'headers="{" ".join(signed_headers)}",'
            f'signature="{base64.b64encode(signature).decode("ascii")}"'
        )


def signing_string(request: httpx.Request, signed_headers: list[str]) -> str:
    lines = []
    for name in signed_headers:
        if name == "(request-target)":
            target = request.url.raw_path.decode("ascii")
            lines.append(f"(request-target): {request.method.lower()} {target}")
        else:
            lines.append(f"{name}: {request.headers[name]}")
    return "\n".join(lines)


class SigningKeyStore(Protocol):
    async def get_account_signing_key(self, account_id: str) -> str | None: ...

    async def find_local_account(self, username: str) -> Account | None: ...


class AccountUriBuilder(Protocol):
    def uri_for(self, entity: Account) -> str: ...


class AccountSigningAuthFactory:
    """Builds a signer for fetches made on behalf of an account.

    Local accounts sign with their own key. Remote accounts have no private
    key here, so their fetches are signed by the instance actor.
    """

    def __init__(
        self,
        key_store: SigningKeyStore,
        uri_builder: AccountUriBuilder,
        *,
        instance_actor_username: str,
    ) -> None:
        self.key_store = key_store
        self.uri_builder = uri_builder
        self.instance_actor_username = instance_actor_username

    async def __call__(self, account: Account) -> httpx.Auth:
        signer = account if account.local else await self._instance_actor()
        private_key_pem = await self.key_store.get_account_signing_key(signer.id)
        if not private_key_pem:
            raise FetchSigningError(f"no signing key for account id={signer.id}")

        key_id = f"{self.uri_builder.uri_for(signer)}#main-key"
        logger.debug("signing fetch on behalf of account id=%s key_id=%s", account.id, key_id)
        return HttpSignatureAuth.from_pem(key_id=key_id, private_key_pem=private_key_pem)

    async def _instance_actor(self) -> Account:
        actor = await self.key_store.find_local_account(self.instance_actor_username)
        if actor is None:
            raise FetchSigningError(f"instance actor not found username={self.instance_actor_username}")
        return actor
