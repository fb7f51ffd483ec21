from __future__ import annotations

from typing import Protocol, TypeVar

from quote_approval.core.models import Account, Status
from quote_approval.core.urls import uri_authority, uri_path_segments

EntityT = TypeVar("EntityT", Account, Status)


class IdentityResolver(Protocol):
    def uri_for(self, entity: Account | Status) -> str: ...

    async def resolve_uri(self, uri: str, kind: type[EntityT]) -> EntityT | None: ...


class EntityLookup(Protocol):
    async def get_status(self, status_id: str) -> Status | None: ...

    async def find_status_by_uri(self, uri: str) -> Status | None: ...

    async def find_local_account(self, username: str) -> Account | None: ...

    async def find_account_by_uri(self, uri: str) -> Account | None: ...


class RepositoryIdentityResolver:
    def __init__(self, repository: EntityLookup, *, local_domain: str) -> None:
        self.repository = repository
        self.local_domain = local_domain.strip().lower()

    def uri_for(self, entity: Account | Status) -> str:
        if entity.uri:
            return entity.uri
        if isinstance(entity, Status):
            return f"{self.account_uri(entity.account)}/statuses/{entity.id}"
        return self.account_uri(entity)

    def account_uri(self, account: Account) -> str:
        if account.uri:
            return account.uri
        return f"https://{self.local_domain}/users/{account.username}"

    def is_local_uri(self, uri: str) -> bool:
        return uri_authority(uri) == self.local_domain

    async def resolve_uri(self, uri: str, kind: type[EntityT]) -> EntityT | None:
        if not uri:
            return None
        if kind is Status:
            return await self._resolve_status(uri)
        if kind is Account:
            return await self._resolve_account(uri)
        raise TypeError(f"unsupported entity kind: {kind!r}")

    async def _resolve_status(self, uri: str) -> Status | None:
        if not self.is_local_uri(uri):
            return await self.repository.find_status_by_uri(uri)

        segments = uri_path_segments(uri)
        if len(segments) != 4 or segments[0] != "users" or segments[2] != "statuses":
            return None
        status = await self.repository.get_status(segments[3])
        if status is None or status.account.username != segments[1] or not status.local:
            return None
        return status

    async def _resolve_account(self, uri: str) -> Account | None:
        if not self.is_local_uri(uri):
            return await self.repository.find_account_by_uri(uri)

        segments = uri_path_segments(uri)
        if len(segments) != 2 or segments[0] != "users":
            return None
        return await self.repository.find_local_account(segments[1])
