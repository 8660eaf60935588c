import argparse
import asyncio

from symreg.config import Settings
from symreg.infra.sql import make_async_engine
from symreg.model.accounts import AccountStore
from symreg.model.db import Base


async def create_account(database_url: str, email: str, name: str,
                         role: str) -> str:
    engine, SessionAsync, _ = make_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionAsync() as db:
            async with db.begin():
                account, key = await AccountStore(db).create(
                    email=email, name=name, role=role
                )
        print(f'✅ account {account.id} created for {account.email} '
              f'({account.role})')
        print(f'   x-api-key: {key}')
        print('   (shown once; only its hash is stored)')
        return key
    finally:
        await engine.dispose()


if __name__ == '__main__':
    parser = argparse.ArgumentParser(
        description="Create an account and print its API key"
    )
    parser.add_argument("email")
    parser.add_argument("name")
    parser.add_argument(
        "--role", default="user",
        choices=["user", "department_admin", "super_admin"],
    )
    args = parser.parse_args()
    asyncio.run(create_account(
        Settings.from_env().database_url, args.email, args.name, args.role
    ))
