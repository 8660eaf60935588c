import logging
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ApiKeyInvalid, ApiKeyMissing, Forbidden
from .helpers import ct_equal
from .model.accounts import AccountStore, Principal

logger = logging.getLogger(__name__)

ADMIN_PRINCIPAL = Principal(
    account_id="env-super-admin", email="", role="super_admin",
    name="Env Super Admin",
)


async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.SessionAsync() as session:
        yield session


async def get_principal(
    request: Request,
    x_api_key: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    if not x_api_key:
        raise ApiKeyMissing("API key is required in 'x-api-key' header.")

    admin_key = request.app.state.settings.admin_api_key
    if admin_key and ct_equal(x_api_key, admin_key):
        return ADMIN_PRINCIPAL

    accounts = AccountStore(db)
    async with request.app.state.gated():
        async with db.begin():
            account = await accounts.find_by_api_key(x_api_key)
            if account is None:
                logger.warning("rejected unknown api key prefix %s",
                               x_api_key[:8])
                raise ApiKeyInvalid("Invalid API key.")
            await accounts.touch(account.id)
    return Principal(
        account_id=account.id,
        email=account.email,
        role=account.role,
        name=account.name,
    )


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Forbidden")
    return principal
