"""
Shop and user directory interfaces.

Shop registration and staff management live outside the billing core; the
core only needs a name and an email address to address notifications.
"""

from dataclasses import dataclass
from typing import Awaitable, Optional, Protocol, Union
from uuid import UUID


@dataclass(frozen=True, slots=True)
class ShopContact:
    name: str
    email: Optional[str] = None


class ShopDirectory(Protocol):
    def get_shop(
        self, shop_id: UUID
    ) -> Union[Optional[ShopContact], Awaitable[Optional[ShopContact]]]: ...


class UserDirectory(Protocol):
    def find_shop_admin(
        self, shop_id: UUID
    ) -> Union[Optional[ShopContact], Awaitable[Optional[ShopContact]]]: ...


class NullShopDirectory:
    """Used when no directory is wired in; enrichment fields stay empty."""

    async def get_shop(self, shop_id: UUID) -> Optional[ShopContact]:
        return None


class NullUserDirectory:
    async def find_shop_admin(self, shop_id: UUID) -> Optional[ShopContact]:
        return None


class StaticShopDirectory:
    """Dictionary-backed directory for scripts and tests."""

    def __init__(
        self,
        shops: dict[UUID, ShopContact] | None = None,
        admins: dict[UUID, ShopContact] | None = None,
    ) -> None:
        self.shops = dict(shops or {})
        self.admins = dict(admins or {})

    async def get_shop(self, shop_id: UUID) -> Optional[ShopContact]:
        return self.shops.get(shop_id)

    async def find_shop_admin(self, shop_id: UUID) -> Optional[ShopContact]:
        return self.admins.get(shop_id)
