"""Bitcoin Core JSON-RPC client.

Implements the wallet signing and broadcast ports plus the raw queries the
ledger service builds on. Every call is a single blocking round trip with a
timeout; nothing is retried here.
"""

from decimal import Decimal
from typing import Any, Optional, Sequence

import httpx
import structlog

from habit_tracker.models.settlement import PackageTxResult, SignResult
from habit_tracker.models.token import Prevout
from habit_tracker.services.exceptions import (
    LedgerConnectionError,
    LedgerRpcError,
    MalformedResponseError,
)

logger = structlog.get_logger()

SATS_PER_BTC = Decimal(100_000_000)


def sats_to_btc(sats: int) -> str:
    """Render sats as a BTC amount string (8 decimals) accepted by the RPC."""
    return f"{Decimal(sats) / SATS_PER_BTC:.8f}"


def btc_to_sats(amount: Any) -> int:
    """Convert an RPC BTC amount (number or string) to sats."""
    return int((Decimal(str(amount)) * SATS_PER_BTC).to_integral_value())


class BitcoinRpcClient:
    """Async JSON-RPC client for a Bitcoin Core wallet endpoint."""

    def __init__(
        self,
        url: str,
        auth: Optional[tuple[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize RPC client.

        Args:
            url: Wallet-scoped RPC URL (e.g. http://127.0.0.1:48332/wallet/test)
            auth: Basic-auth (user, password) pair, from cookie or config
            timeout: Per-call timeout in seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.url = url
        self.auth = auth
        self.timeout = timeout
        self.transport = transport

    async def call(self, method: str, *params: Any) -> Any:
        """Invoke one RPC method and return its ``result``.

        Raises:
            LedgerConnectionError: Node unreachable or timed out
            LedgerRpcError: Node returned an RPC error (or rejected credentials)
            MalformedResponseError: Response is not a JSON-RPC envelope
        """
        payload = {
            "jsonrpc": "1.0",
            "id": "habit-tracker",
            "method": method,
            "params": list(params),
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, auth=self.auth, transport=self.transport
            ) as client:
                response = await client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            logger.warning("bitcoin_rpc.timeout", method=method, timeout=self.timeout)
            raise LedgerConnectionError(f"RPC {method} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error("bitcoin_rpc.connection_failed", method=method, error=str(e))
            raise LedgerConnectionError(f"Failed to reach Bitcoin node at {self.url}: {e}") from e

        if response.status_code in (401, 403):
            raise LedgerRpcError(
                method,
                response.status_code,
                "Unauthorized: check BITCOIN_RPC_USER/BITCOIN_RPC_PASSWORD "
                "or BITCOIN_RPC_COOKIE_FILE",
            )

        # Bitcoin Core reports RPC errors as HTTP 500/404 with a JSON body
        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"RPC {method} returned non-JSON response ({response.status_code}): "
                f"{response.text[:200]}"
            ) from e

        if not isinstance(body, dict) or ("result" not in body and "error" not in body):
            raise MalformedResponseError(f"RPC {method} returned unexpected body: {body!r}")

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            logger.warning("bitcoin_rpc.error", method=method, code=code, message=message)
            raise LedgerRpcError(method, code, message)

        logger.debug("bitcoin_rpc.call", method=method)
        return body.get("result")

    async def get_chain(self) -> str:
        """Chain name reported by the node (``regtest``, ``testnet4``, ``main``...)."""
        info = await self.call("getblockchaininfo")
        try:
            return info["chain"]
        except (KeyError, TypeError) as e:
            raise MalformedResponseError("getblockchaininfo response has no chain") from e

    async def get_raw_transaction_hex(self, txid: str) -> str:
        return await self.call("getrawtransaction", txid, False)

    async def list_unspent(self) -> list[dict]:
        return await self.call("listunspent")

    async def get_new_address(self) -> str:
        return await self.call("getnewaddress")

    async def sign(self, tx_hex: str, prevouts: Sequence[Prevout]) -> SignResult:
        """Sign with the node wallet (``signrawtransactionwithwallet``).

        Prevouts without a known script are left for the wallet to resolve
        from its own UTXO set.
        """
        prevtxs = [
            {
                "txid": p.outpoint.txid,
                "vout": p.outpoint.vout,
                "scriptPubKey": p.script_pubkey_hex,
                "amount": sats_to_btc(p.amount_sats),
            }
            for p in prevouts
            if p.script_pubkey_hex
        ]
        if prevtxs:
            result = await self.call("signrawtransactionwithwallet", tx_hex, prevtxs)
        else:
            result = await self.call("signrawtransactionwithwallet", tx_hex)

        try:
            return SignResult(
                hex=result["hex"],
                complete=bool(result["complete"]),
                errors=list(result.get("errors") or []),
            )
        except (KeyError, TypeError) as e:
            raise MalformedResponseError(f"Unexpected signing response: {result!r}") from e

    async def submit_package(self, tx_hexes: Sequence[str]) -> list[PackageTxResult]:
        """Submit transactions as one package (``submitpackage``).

        ``tx-results`` is an object keyed by wtxid on current nodes and a list
        on older ones; both are returned in submission order.
        """
        result = await self.call("submitpackage", list(tx_hexes))
        entries = result.get("tx-results") if isinstance(result, dict) else None
        if isinstance(entries, dict):
            entries = list(entries.values())
        if not isinstance(entries, list):
            raise MalformedResponseError(f"submitpackage returned no tx-results: {result!r}")

        results = []
        for entry in entries:
            error = entry.get("error")
            results.append(
                PackageTxResult(txid=entry.get("txid"), error=str(error) if error else None)
            )
        return results

    async def submit_single(self, tx_hex: str) -> str:
        """Broadcast one transaction (``sendrawtransaction``) and return its txid."""
        return await self.call("sendrawtransaction", tx_hex)
