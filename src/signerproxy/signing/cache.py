"""Per-key signer cache with single-flight resolution.

Resolving a key against the backend is slow (USB or network round-trip)
and may fail. The cache guarantees at most one in-progress resolve per key:
concurrent callers asking for the same unseen key all await the same task.

Two lock granularities are supported:

- per_key: resolves for different keys run concurrently. Use this when the
  transport supports concurrent sessions (cloud KMS).
- serial: resolves are additionally serialized behind one global lock, so
  only one backend resolve is in flight at any time. Use this for exclusive
  transports (a single USB session). Lookups of already cached keys never
  wait on that lock.

Entries are never evicted or revalidated. A failed resolve leaves no entry,
so the next request for that key issues a fresh resolve.
"""

import asyncio
import logging
from typing import Optional

from signerproxy.signing.base import KeyId, KeySigner, SignerProvider

logger = logging.getLogger(__name__)

SERIAL = "serial"
PER_KEY = "per_key"


def cache_mode_for(provider: SignerProvider, configured: str = "auto") -> str:
    """Pick the lock granularity for a provider."""
    if configured in (SERIAL, PER_KEY):
        return configured
    return SERIAL if provider.exclusive_transport else PER_KEY


class SignerCache:
    """Mapping of key identifier to resolved signer."""

    def __init__(self, provider: SignerProvider, mode: str = "auto"):
        self.provider = provider
        self.mode = cache_mode_for(provider, mode)
        self._signers: dict[KeyId, KeySigner] = {}
        self._inflight: dict[KeyId, asyncio.Future] = {}
        self._resolve_lock: Optional[asyncio.Lock] = asyncio.Lock() if self.mode == SERIAL else None

    def __contains__(self, key_id: KeyId) -> bool:
        return key_id in self._signers

    def __len__(self) -> int:
        return len(self._signers)

    def get(self, key_id: KeyId) -> Optional[KeySigner]:
        return self._signers.get(key_id)

    async def get_or_create(self, key_id: KeyId) -> KeySigner:
        """Return the cached signer for key_id, resolving it on first use.

        Raises:
            BackendConnectError: If the backend cannot resolve the key
        """
        signer = self._signers.get(key_id)
        if signer is not None:
            return signer

        task = self._inflight.get(key_id)
        if task is None:
            task = asyncio.ensure_future(self._resolve(key_id))
            task.add_done_callback(_consume_exception)
            self._inflight[key_id] = task
        else:
            logger.debug(f"Joining in-flight resolve for key {key_id}")

        # A cancelled waiter must not cancel the resolve other waiters share
        return await asyncio.shield(task)

    async def _resolve(self, key_id: KeyId) -> KeySigner:
        try:
            if self._resolve_lock is not None:
                async with self._resolve_lock:
                    signer = await self.provider.resolve(key_id)
            else:
                signer = await self.provider.resolve(key_id)

            self._signers[key_id] = signer
            logger.info(f"Cached signer for key {key_id} ({signer.address})")
            return signer

        except Exception as e:
            logger.warning(f"Resolve failed for key {key_id}: {e}")
            raise

        finally:
            self._inflight.pop(key_id, None)


def _consume_exception(task: asyncio.Future) -> None:
    # Every waiter may have gone away; mark the failure as retrieved.
    if not task.cancelled():
        task.exception()
