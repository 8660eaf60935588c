# model/accounts.py
from __future__ import annotations
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, normalize_email
from .db import Account

ADMIN_ROLES = ("super_admin", "department_admin")
KEY_PREFIX_LEN = 8


@dataclass(frozen=True)
class Principal:
    account_id: str
    email: str
    role: str = "user"
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def new_api_key() -> str:
    return f"sym_{secrets.token_urlsafe(32)}"


class AccountStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, *, email: str, name: str, role: str = "user",
                     api_key: Optional[str] = None) -> Tuple[Account, str]:
        """Stage a new account; returns it with its plaintext key, which
        is not stored anywhere."""
        key = api_key or new_api_key()
        account = Account(
            id=uuid.uuid4().hex,
            email=normalize_email(email),
            name=name.strip(),
            role=role,
            api_key_prefix=key[:KEY_PREFIX_LEN],
            api_key_hash=hash_api_key(key),
            is_active=True,
            created_at=now_ts(),
        )
        self.db.add(account)
        return account, key

    async def find_by_api_key(self, key: str) -> Optional[Account]:
        return (await self.db.execute(
            select(Account).where(
                Account.api_key_prefix == key[:KEY_PREFIX_LEN],
                Account.api_key_hash == hash_api_key(key),
                Account.is_active.is_(True),
            )
        )).scalars().first()

    async def touch(self, account_id: str) -> None:
        await self.db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(api_key_last_used_at=now_ts())
        )
