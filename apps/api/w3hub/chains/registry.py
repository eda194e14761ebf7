"""Name -> ChainClient mapping shared by the tracking engine and the query path."""
import logging
import threading
from typing import Dict, List, Optional, Tuple

from w3hub.chains.base import ChainClient
from w3hub.exceptions import UnknownChain

logger = logging.getLogger(__name__)


class ChainRegistry:
    """
    Registry of chain backends keyed by chain id.

    Registration is last-write-wins. Mutations and lookups are serialized so
    a lookup never observes a half-applied change. Watch tasks resolve their
    client once per cycle, so a replaced backend takes effect on the next
    cycle and never mid-call.
    """

    def __init__(self):
        self._clients: Dict[str, ChainClient] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(chain_id: str) -> str:
        return (chain_id or "").strip().lower()

    def register(self, chain_id: str, client: ChainClient) -> Optional[ChainClient]:
        """
        Register (or replace) a backend.

        Returns the replaced client, if any. The caller owns it from then on
        and closes it; ``TrackingEngine.replace_chain`` does both steps while
        watches are running.
        """
        key = self._key(chain_id)
        if not key:
            raise UnknownChain("Chain id must not be empty")
        with self._lock:
            previous = self._clients.get(key)
            self._clients[key] = client
        if previous is not None and previous is not client:
            logger.info(f"🔁 Chain backend replaced: {key}")
        else:
            logger.info(f"🔗 Chain backend registered: {key}")
        return previous

    def resolve(self, chain_id: str) -> Tuple[Optional[ChainClient], bool]:
        """Look up a backend; unknown ids return ``(None, False)``."""
        with self._lock:
            client = self._clients.get(self._key(chain_id))
        return client, client is not None

    def require(self, chain_id: str) -> ChainClient:
        """Look up a backend or raise ``UnknownChain``."""
        client, found = self.resolve(chain_id)
        if not found:
            raise UnknownChain(f"Unknown chain '{chain_id}'", chain=chain_id)
        return client

    def chains(self) -> List[str]:
        with self._lock:
            return sorted(self._clients)

    def __contains__(self, chain_id: str) -> bool:
        return self.resolve(chain_id)[1]

    async def aclose(self):
        """Close every registered backend."""
        with self._lock:
            clients = list(self._clients.values())
        for client in clients:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Failed to close chain client {client.chain_id}: {e}")
