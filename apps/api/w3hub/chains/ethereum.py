"""
Ethereum-like chain backend over JSON-RPC.

Uses the standard ``eth_*`` methods plus the Alchemy enhanced API:
  - alchemy_getTokenBalances    (ERC-20 holdings, paginated by pageKey)
  - alchemy_getTokenMetadata    (symbol / decimals, cached per contract)
  - alchemy_getAssetTransfers   (transfer history, paginated by pageKey)

One instance serves one chain; register several instances under different
ids ("ethereum", "base", ...) for several EVM networks.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from w3hub.chains.base import Asset, ChainClient, Transaction
from w3hub.exceptions import BackendUnavailable, InvalidAddress

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
NATIVE_DECIMALS = 18
TRANSFER_CATEGORIES = ["external", "internal", "erc20"]


def parse_hex_int(value: Optional[str]) -> int:
    if not value:
        return 0
    return int(value, 16)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse Alchemy's ISO block timestamp into naive UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _transfer_amount(transfer: Dict[str, Any]) -> Decimal:
    """Exact amount from rawContract when available, else the float-ish ``value``."""
    raw = transfer.get("rawContract") or {}
    raw_value = raw.get("value")
    raw_decimals = raw.get("decimal")
    if raw_value and raw_decimals:
        return Decimal(parse_hex_int(raw_value)).scaleb(-parse_hex_int(raw_decimals))
    value = transfer.get("value")
    if value is None:
        return Decimal(0)
    return Decimal(str(value))


class EthereumClient(ChainClient):
    """JSON-RPC client for one Ethereum-like chain."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: str = "ethereum",
        native_symbol: str = "ETH",
        timeout: float = 15.0,
        stream_poll_interval: float = 12.0,
        block_time_seconds: float = 12.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.native_symbol = native_symbol
        self.stream_poll_interval = stream_poll_interval
        self.block_time_seconds = block_time_seconds
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._token_metadata: Dict[str, Dict[str, Any]] = {}
        self._request_id = 0

    @property
    def supports_streaming(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> bool:
        return bool(address) and bool(ADDRESS_PATTERN.match(address.strip()))

    def normalize_address(self, address: str) -> str:
        return (address or "").strip().lower()

    def _require_address(self, address: str) -> str:
        if not self.validate_address(address):
            raise InvalidAddress(
                f"'{address}' is not a valid {self.chain_id} address",
                chain=self.chain_id,
                address=address,
            )
        return self.normalize_address(address)

    # ------------------------------------------------------------------
    # JSON-RPC transport
    # ------------------------------------------------------------------

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        body = {"id": self._request_id, "jsonrpc": "2.0", "method": method, "params": params}
        try:
            resp = await self._client.post(self.rpc_url, json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.TimeoutException as e:
            raise BackendUnavailable(f"{self.chain_id} RPC {method} timed out", chain=self.chain_id) from e
        except httpx.HTTPError as e:
            raise BackendUnavailable(f"{self.chain_id} RPC {method} failed: {e}", chain=self.chain_id) from e
        except ValueError as e:
            raise BackendUnavailable(f"{self.chain_id} RPC {method} returned invalid JSON", chain=self.chain_id) from e

        if data.get("error"):
            message = (data["error"] or {}).get("message", "")
            raise BackendUnavailable(f"{self.chain_id} RPC {method} error: {message}", chain=self.chain_id)
        return data.get("result")

    async def get_block_number(self) -> int:
        return parse_hex_int(await self._rpc("eth_blockNumber", []))

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_balance(self, address: str) -> Decimal:
        addr = self._require_address(address)
        wei = parse_hex_int(await self._rpc("eth_getBalance", [addr, "latest"]))
        return Decimal(wei).scaleb(-NATIVE_DECIMALS)

    async def _get_token_metadata(self, contract: str) -> Dict[str, Any]:
        cached = self._token_metadata.get(contract)
        if cached is not None:
            return cached
        meta = await self._rpc("alchemy_getTokenMetadata", [contract]) or {}
        # Answers without a symbol are asked again on the next read
        if (meta.get("symbol") or "").strip():
            self._token_metadata[contract] = meta
        return meta

    async def _get_token_balances(self, address: str) -> List[Dict[str, Any]]:
        balances: List[Dict[str, Any]] = []
        page_key = None
        while True:
            params: List[Any] = [address, "erc20"]
            if page_key:
                params.append({"pageKey": page_key})
            result = await self._rpc("alchemy_getTokenBalances", params) or {}
            balances.extend(result.get("tokenBalances") or [])
            page_key = result.get("pageKey")
            if not page_key:
                break
        return balances

    async def get_assets(self, address: str) -> List[Asset]:
        addr = self._require_address(address)
        now = datetime.utcnow()
        assets: List[Asset] = []

        native = await self.get_balance(addr)
        if native != 0:
            assets.append(Asset(
                chain=self.chain_id,
                address=addr,
                symbol=self.native_symbol,
                quantity=native,
                contract="native",
                last_updated=now,
            ))

        tokens: List[Asset] = []
        for entry in await self._get_token_balances(addr):
            if entry.get("error"):
                continue
            raw = parse_hex_int(entry.get("tokenBalance"))
            if raw == 0:
                continue
            contract = (entry.get("contractAddress") or "").lower()
            meta = await self._get_token_metadata(contract)
            decimals = meta.get("decimals") or 0
            symbol = (meta.get("symbol") or "").strip() or contract
            tokens.append(Asset(
                chain=self.chain_id,
                address=addr,
                symbol=symbol,
                quantity=Decimal(raw).scaleb(-int(decimals)),
                contract=contract,
                last_updated=now,
            ))

        tokens.sort(key=lambda a: (a.symbol.upper(), a.contract))
        assets.extend(_unique_symbols(tokens, taken={a.symbol for a in assets}))
        return assets

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _asset_transfers(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Every transfer matching ``params``, following pageKey to the last page."""
        transfers: List[Dict[str, Any]] = []
        seen_keys = set()
        page_key = None
        while True:
            req_params = dict(params)
            if page_key:
                req_params["pageKey"] = page_key
            result = await self._rpc("alchemy_getAssetTransfers", [req_params]) or {}
            transfers.extend(result.get("transfers") or [])
            page_key = result.get("pageKey")
            if not page_key:
                return transfers
            if page_key in seen_keys:
                raise BackendUnavailable(
                    f"{self.chain_id} RPC alchemy_getAssetTransfers repeated page key {page_key}",
                    chain=self.chain_id,
                )
            seen_keys.add(page_key)

    async def _transfers_between(self, address: str, from_block: int, to_block: int) -> List[Transaction]:
        base = {
            "fromBlock": hex(max(from_block, 0)),
            "toBlock": hex(to_block),
            "category": TRANSFER_CATEGORIES,
            "withMetadata": True,
            "excludeZeroValue": False,
            "maxCount": "0x3e8",
        }
        outgoing = await self._asset_transfers({**base, "fromAddress": address})
        incoming = await self._asset_transfers({**base, "toAddress": address})
        return self._to_transactions(outgoing + incoming)

    def _to_transactions(self, transfers: List[Dict[str, Any]]) -> List[Transaction]:
        """Collapse transfers to one Transaction per hash, sorted by ordering key."""
        by_hash: Dict[str, Transaction] = {}
        for t in transfers:
            tx_hash = (t.get("hash") or "").lower()
            if not tx_hash or tx_hash in by_hash:
                continue
            ts = _parse_timestamp((t.get("metadata") or {}).get("blockTimestamp"))
            by_hash[tx_hash] = Transaction(
                chain=self.chain_id,
                hash=tx_hash,
                from_address=(t.get("from") or "").lower(),
                to_address=(t.get("to") or "").lower(),
                amount=_transfer_amount(t),
                timestamp=ts or datetime.utcnow(),
                block_height=parse_hex_int(t.get("blockNum")),
                symbol=t.get("asset"),
            )
        return sorted(by_hash.values(), key=lambda tx: tx.ordering_key)

    async def get_transactions(
        self,
        address: str,
        from_time: datetime,
        to_time: datetime,
    ) -> List[Transaction]:
        addr = self._require_address(address)
        if from_time >= to_time:
            return []

        head = await self.get_block_number()
        # Start early enough that the window is fully covered, then filter on timestamps
        seconds_back = max((datetime.utcnow() - from_time).total_seconds(), 0)
        blocks_back = int(seconds_back / self.block_time_seconds * 1.1) + 64
        from_block = max(head - blocks_back, 0)

        txs = await self._transfers_between(addr, from_block, head)
        return [tx for tx in txs if from_time <= tx.timestamp < to_time]

    async def watch_address(self, address: str) -> AsyncIterator[Transaction]:
        """
        Live stream driven by head polling.

        Yields transactions from every new block range as the chain head
        advances. Errors propagate so the consumer can back off and reconnect.
        """
        addr = self._require_address(address)
        last_block = await self.get_block_number()
        logger.debug(f"[{self.chain_id}] stream for {addr} opened at block {last_block}")
        try:
            while True:
                await asyncio.sleep(self.stream_poll_interval)
                head = await self.get_block_number()
                if head <= last_block:
                    continue
                txs = await self._transfers_between(addr, last_block + 1, head)
                last_block = head
                for tx in txs:
                    yield tx
        finally:
            logger.debug(f"[{self.chain_id}] stream for {addr} closed at block {last_block}")

    async def aclose(self):
        await self._client.aclose()


def _unique_symbols(tokens: List[Asset], taken: set) -> List[Asset]:
    """Disambiguate tokens sharing a symbol by suffixing a contract prefix."""
    out: List[Asset] = []
    for token in tokens:
        symbol = token.symbol
        if symbol in taken:
            symbol = f"{symbol}:{token.contract[:10]}"
        taken.add(symbol)
        if symbol != token.symbol:
            token = Asset(
                chain=token.chain,
                address=token.address,
                symbol=symbol,
                quantity=token.quantity,
                contract=token.contract,
                last_updated=token.last_updated,
            )
        out.append(token)
    return out
