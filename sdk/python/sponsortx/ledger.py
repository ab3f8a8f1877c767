from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import httpx

from .client import SDK_VERSION, stable_json
from .config import FaucetPolicy
from .errors import FaucetTimeout, LedgerError, LedgerSubmissionError
from .models import CoinRef, TransactionEffects, normalize_address

logger = logging.getLogger(__name__)

IOTA_COIN_TYPE = "0x2::iota::IOTA"

NETWORKS: Dict[str, Dict[str, Optional[str]]] = {
    "mainnet": {"rpc": "https://api.mainnet.iota.cafe", "faucet": None},
    "testnet": {"rpc": "https://api.testnet.iota.cafe", "faucet": "https://faucet.testnet.iota.cafe"},
    "devnet": {"rpc": "https://api.devnet.iota.cafe", "faucet": "https://faucet.devnet.iota.cafe"},
    "localnet": {"rpc": "http://127.0.0.1:9000", "faucet": "http://127.0.0.1:9123"},
}

EXPLORER_TX_URL = "https://explorer.rebased.iota.org/txblock/"


def explorer_tx_url(digest: str, network: Optional[str] = None) -> str:
    url = EXPLORER_TX_URL + digest
    if network and network != "mainnet":
        url += f"?network={network}"
    return url


@runtime_checkable
class LedgerClient(Protocol):
    async def get_balance(self, owner: str, coin_type: str = IOTA_COIN_TYPE) -> int: ...

    async def get_reference_gas_price(self) -> int: ...

    async def get_gas_coins(self, owner: str, coin_type: str = IOTA_COIN_TYPE) -> List[CoinRef]: ...

    async def execute_transaction(self, tx_bytes: bytes, signatures: Sequence[str]) -> str: ...

    async def wait_for_transaction(self, digest: str) -> TransactionEffects: ...

    async def request_faucet(self, recipient: str) -> None: ...


class JsonRpcLedgerClient:
    def __init__(
        self,
        rpc_url: str,
        faucet_url: Optional[str] = None,
        timeout_seconds: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
        confirm_timeout_seconds: float = 60.0,
        confirm_interval_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.faucet_url = faucet_url.rstrip("/") if faucet_url else None
        self.timeout_seconds = timeout_seconds
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.confirm_interval_seconds = confirm_interval_seconds
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=self.timeout_seconds)

    @classmethod
    def for_network(cls, network: str, **kwargs: Any) -> "JsonRpcLedgerClient":
        endpoints = NETWORKS.get(network)
        if endpoints is None:
            raise ValueError(f"unknown network: {network}")
        return cls(endpoints["rpc"] or "", endpoints["faucet"], **kwargs)

    async def __aenter__(self) -> "JsonRpcLedgerClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def get_balance(self, owner: str, coin_type: str = IOTA_COIN_TYPE) -> int:
        result = await self._call("iotax_getBalance", [normalize_address(owner), coin_type])
        try:
            return int(result["totalBalance"])
        except (TypeError, KeyError, ValueError) as exc:
            raise LedgerError("malformed balance response", details=result) from exc

    async def get_reference_gas_price(self) -> int:
        result = await self._call("iotax_getReferenceGasPrice", [])
        try:
            return int(result)
        except (TypeError, ValueError) as exc:
            raise LedgerError("malformed reference gas price", details=result) from exc

    async def get_gas_coins(self, owner: str, coin_type: str = IOTA_COIN_TYPE) -> List[CoinRef]:
        result = await self._call("iotax_getCoins", [normalize_address(owner), coin_type, None, None])
        data = result.get("data") if isinstance(result, dict) else None
        if not isinstance(data, list):
            raise LedgerError("malformed coins response", details=result)
        try:
            return [CoinRef.from_json(c) for c in data]
        except ValueError as exc:
            raise LedgerError(f"malformed coin in response: {exc}", details=result) from exc

    async def execute_transaction(self, tx_bytes: bytes, signatures: Sequence[str]) -> str:
        params = [
            base64.b64encode(bytes(tx_bytes)).decode("ascii"),
            list(signatures),
            {"showEffects": True},
            "WaitForLocalExecution",
        ]
        try:
            result = await self._call("iota_executeTransactionBlock", params)
        except LedgerSubmissionError:
            raise
        except LedgerError as exc:
            raise LedgerSubmissionError(exc.message, code=exc.code, details=exc.details) from exc
        digest = result.get("digest") if isinstance(result, dict) else None
        if not isinstance(digest, str) or not digest:
            raise LedgerSubmissionError("execution response has no digest", details=result)
        return digest

    async def wait_for_transaction(self, digest: str) -> TransactionEffects:
        elapsed = 0.0
        while True:
            try:
                result = await self._call("iota_getTransactionBlock", [digest, {"showEffects": True}])
            except LedgerError as exc:
                if elapsed >= self.confirm_timeout_seconds:
                    raise LedgerSubmissionError(
                        f"transaction {digest} not confirmed within {self.confirm_timeout_seconds:g}s"
                    ) from exc
                await self._sleep(self.confirm_interval_seconds)
                elapsed += self.confirm_interval_seconds
                continue
            try:
                effects = TransactionEffects.from_json(result.get("effects"))
            except (AttributeError, ValueError) as exc:
                raise LedgerSubmissionError(f"malformed effects for {digest}", details=result) from exc
            if not effects.succeeded:
                raise LedgerSubmissionError(
                    f"transaction {digest} failed: {effects.error or effects.status}", details=effects
                )
            return effects

    async def request_faucet(self, recipient: str) -> None:
        if not self.faucet_url:
            raise LedgerError("no faucet configured for this ledger client")
        body = {"FixedAmountRequest": {"recipient": normalize_address(recipient)}}
        try:
            resp = await self.http.post(
                self.faucet_url + "/v1/gas",
                content=stable_json(body).encode("utf-8"),
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise LedgerError(f"faucet unreachable: {exc!r}") from exc
        if not 200 <= resp.status_code < 300:
            raise LedgerError(f"faucet request failed: HTTP {resp.status_code}: {resp.text}")
        logger.info(f"requested faucet funds for {recipient}")

    async def _call(self, method: str, params: List[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self.http.post(
                self.rpc_url,
                content=stable_json(body).encode("utf-8"),
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise LedgerError(f"ledger rpc unreachable: {exc!r}") from exc
        if not 200 <= resp.status_code < 300:
            raise LedgerError(f"ledger rpc {method} failed: HTTP {resp.status_code}")
        try:
            parsed = resp.json()
        except ValueError as exc:
            raise LedgerError(f"ledger rpc {method} returned invalid json") from exc
        if not isinstance(parsed, dict):
            raise LedgerError(f"ledger rpc {method} returned non-object json")
        err = parsed.get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message") if isinstance(err, dict) else str(err)
            error_cls = LedgerSubmissionError if method == "iota_executeTransactionBlock" else LedgerError
            raise error_cls(f"ledger rpc {method}: {message}", code=code, details=err)
        return parsed.get("result")

    def _headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": f"sponsortx-python-sdk/{SDK_VERSION}",
        }


async def wait_for_faucet_tokens(
    ledger: LedgerClient,
    sender: str,
    policy: Optional[FaucetPolicy] = None,
    *,
    coin_type: str = IOTA_COIN_TYPE,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> int:
    """Make sure ``sender`` holds at least ``policy.threshold``.

    Requests faucet funds once when under the threshold, then polls every
    ``interval_seconds`` until funded or ``timeout_seconds`` have elapsed.
    Returns the balance that satisfied the threshold.
    """
    policy = policy or FaucetPolicy()
    balance = await ledger.get_balance(sender, coin_type)
    if balance >= policy.threshold:
        return balance

    await ledger.request_faucet(sender)
    logger.info(f"waiting for faucet tokens for {sender} (balance={balance})")

    elapsed = 0.0
    while elapsed < policy.timeout_seconds:
        await sleep(policy.interval_seconds)
        elapsed += policy.interval_seconds
        balance = await ledger.get_balance(sender, coin_type)
        if balance >= policy.threshold:
            return balance

    raise FaucetTimeout(sender, policy.timeout_seconds, last_balance=balance)


waitForFaucetTokens = wait_for_faucet_tokens
