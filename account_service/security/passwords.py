"""bcrypt password hashing with a configurable work factor.

Hashing and comparison run in a worker thread so a slow digest never stalls
other requests on the event loop.
"""

from __future__ import annotations

import asyncio
import logging

import bcrypt

logger = logging.getLogger(__name__)

_DUMMY_PLAINTEXT = b"account-service-timing-dummy"


class PasswordHasher:
    """Salted one-way password digests; raising ``rounds`` needs no migration."""

    def __init__(self, rounds: int = 12) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self._rounds = rounds
        self._dummy_hash: bytes | None = None

    @property
    def rounds(self) -> int:
        return self._rounds

    def _hash_sync(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def _verify_sync(self, plain: str, digest: str) -> bool:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), digest.encode("utf-8"))
        except ValueError:
            logger.warning("stored password digest is malformed")
            return False

    async def hash(self, plain: str) -> str:
        """Return a bcrypt digest of ``plain``."""
        return await asyncio.to_thread(self._hash_sync, plain)

    async def verify(self, plain: str, digest: str) -> bool:
        """Return ``True`` when ``plain`` matches ``digest``; bcrypt compares in constant time."""
        return await asyncio.to_thread(self._verify_sync, plain, digest)

    async def burn(self, plain: str) -> None:
        """Spend one comparison's worth of work against a dummy digest.

        Called when no account matches so an unknown email costs the same as a
        wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                bcrypt.hashpw, _DUMMY_PLAINTEXT, bcrypt.gensalt(rounds=self._rounds)
            )
        await asyncio.to_thread(self._verify_sync, plain, self._dummy_hash.decode("utf-8"))
