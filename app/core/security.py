"""Password hashing for account credentials."""

import asyncio
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

import bcrypt

T = TypeVar("T")

BCRYPT_ROUNDS = 12

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="bcrypt")

# Checked on unknown emails so login timing does not reveal which accounts exist
DUMMY_HASH = bcrypt.hashpw(b"dummy", bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode()


async def _off_loop(fn: Callable[[], T]) -> T:
    return await asyncio.get_running_loop().run_in_executor(_executor, fn)


async def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    return await _off_loop(
        lambda: bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()
    )


async def verify_password(plain: str, hashed: str) -> bool:
    """Check a password against a stored bcrypt hash; malformed hashes never match."""

    def check() -> bool:
        try:
            return bcrypt.checkpw(plain.encode(), hashed.encode())
        except ValueError:
            return False

    return await _off_loop(check)
