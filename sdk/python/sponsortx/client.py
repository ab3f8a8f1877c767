from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, Optional, Type

import httpx

from .config import RESERVE_DURATION_SECS, GasStation
from .errors import GasStationError, GasStationRejected, GasStationUnreachable, SponsorSubmissionFailed
from .models import ReservationResult, TransactionEffects

APIVersion = "v1"
SDK_VERSION = "0.1.0"

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = (408, 425, 429, 500, 502, 503, 504)
# the request never reached the station
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout, httpx.ProxyError, httpx.UnsupportedProtocol)


class AuthStrategy:
    def apply(self, headers: Dict[str, str]) -> None:
        raise NotImplementedError


class BearerAuth(AuthStrategy):
    def __init__(self, token: str):
        self.token = token

    def apply(self, headers: Dict[str, str]) -> None:
        if not self.token:
            raise ValueError("gas station bearer token is required")
        headers["Authorization"] = f"Bearer {self.token}"


class GasStationClient:
    """Client for a single gas station.

    The bearer token is applied to each request's own headers, so one
    ``httpx.AsyncClient`` can be shared between stations.
    """

    def __init__(
        self,
        base_url: str,
        auth: Optional[AuthStrategy] = None,
        timeout_seconds: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        http: Optional[httpx.AsyncClient] = None,
        reserve_duration_secs: int = RESERVE_DURATION_SECS,
    ):
        if not base_url or not base_url.strip():
            raise ValueError("gas station url is required")
        self.base_url = base_url.strip().rstrip("/")
        self.auth = auth
        self.timeout_seconds = timeout_seconds
        self.headers = headers or {}
        self.reserve_duration_secs = reserve_duration_secs
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=self.timeout_seconds)

    @classmethod
    def for_station(cls, station: GasStation, **kwargs: Any) -> "GasStationClient":
        return cls(station.base_url, BearerAuth(station.token), **kwargs)

    async def __aenter__(self) -> "GasStationClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def reserve_gas(self, gas_budget: int) -> ReservationResult:
        if isinstance(gas_budget, bool) or not isinstance(gas_budget, int) or gas_budget <= 0:
            raise ValueError("gas_budget must be a positive integer")
        body = {"gas_budget": gas_budget, "reserve_duration_secs": self.reserve_duration_secs}
        resp = await self._request("POST", f"/{APIVersion}/reserve_gas", body)
        if not 200 <= resp.status_code < 300:
            raise self._to_error(resp, GasStationRejected, "gas reservation rejected")
        parsed = self._parse(resp, GasStationRejected)
        if parsed.get("error"):
            reason = str(parsed["error"])
            raise GasStationRejected(
                f"gas reservation rejected by {self.base_url}: {reason}",
                station_url=self.base_url,
                status_code=resp.status_code,
                reason=reason,
            )
        try:
            reservation = ReservationResult.from_json(parsed.get("result"))
        except ValueError as exc:
            raise GasStationRejected(
                f"malformed reservation from {self.base_url}: {exc}",
                station_url=self.base_url,
                status_code=resp.status_code,
                details=parsed,
            ) from exc
        logger.info(
            f"reserved gas from {self.base_url}: reservation={reservation.reservation_id} "
            f"sponsor={reservation.sponsor_address} coins={len(reservation.gas_coins)}"
        )
        return reservation

    def reserveGas(self, gas_budget: int):
        return self.reserve_gas(gas_budget)

    async def execute_tx(self, reservation_id: int, tx_bytes: bytes, user_sig: str) -> TransactionEffects:
        if not isinstance(tx_bytes, (bytes, bytearray)) or not tx_bytes:
            raise ValueError("tx_bytes must be non-empty bytes")
        if not user_sig:
            raise ValueError("user_sig is required")
        body = {
            "reservation_id": reservation_id,
            "tx_bytes": base64.b64encode(bytes(tx_bytes)).decode("ascii"),
            "user_sig": user_sig,
        }
        try:
            resp = await self._request("POST", f"/{APIVersion}/execute_tx", body)
        except GasStationUnreachable as exc:
            # once the body may have been sent the station could already have broadcast
            raise SponsorSubmissionFailed(
                str(exc),
                station_url=self.base_url,
                transient=isinstance(exc.__cause__, _UNSENT_ERRORS),
            ) from exc
        if not 200 <= resp.status_code < 300:
            raise self._to_error(resp, SponsorSubmissionFailed, "sponsored execution failed")
        parsed = self._parse(resp, SponsorSubmissionFailed)
        if parsed.get("error"):
            reason = str(parsed["error"])
            raise SponsorSubmissionFailed(
                f"sponsored execution failed at {self.base_url}: {reason}",
                station_url=self.base_url,
                status_code=resp.status_code,
                reason=reason,
            )
        try:
            effects = TransactionEffects.from_json(parsed.get("effects"))
        except ValueError as exc:
            raise SponsorSubmissionFailed(
                f"malformed effects from {self.base_url}: {exc}",
                station_url=self.base_url,
                status_code=resp.status_code,
                details=parsed,
            ) from exc
        if not effects.succeeded:
            raise SponsorSubmissionFailed(
                f"transaction {effects.digest} failed on-chain: {effects.error or effects.status}",
                station_url=self.base_url,
                status_code=resp.status_code,
                reason=effects.error,
                transient=False,
                details=effects,
            )
        return effects

    def executeTx(self, reservation_id: int, tx_bytes: bytes, user_sig: str):
        return self.execute_tx(reservation_id, tx_bytes, user_sig)

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]]) -> httpx.Response:
        body_bytes = stable_json(body) if body is not None else ""
        headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": f"sponsortx-python-sdk/{SDK_VERSION} api/{APIVersion}",
            **self.headers,
        }
        if body_bytes:
            headers["Content-Type"] = "application/json"
        if self.auth:
            self.auth.apply(headers)
        try:
            return await self.http.request(
                method,
                self.base_url + path,
                content=body_bytes.encode("utf-8") if body_bytes else None,
                headers=headers,
            )
        except httpx.TransportError as exc:
            raise GasStationUnreachable(
                f"gas station {self.base_url} unreachable: {exc!r}",
                station_url=self.base_url,
            ) from exc

    def _parse(self, resp: httpx.Response, error_cls: Type[GasStationError]) -> Dict[str, Any]:
        try:
            parsed = resp.json()
        except ValueError as exc:
            raise error_cls(
                f"gas station {self.base_url} returned invalid json",
                station_url=self.base_url,
                status_code=resp.status_code,
            ) from exc
        if not isinstance(parsed, dict):
            raise error_cls(
                f"gas station {self.base_url} returned non-object json",
                station_url=self.base_url,
                status_code=resp.status_code,
            )
        return parsed

    def _to_error(self, resp: httpx.Response, error_cls: Type[GasStationError], prefix: str) -> GasStationError:
        try:
            parsed = resp.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            inner = parsed.get("error") if parsed.get("error") is not None else parsed
            if isinstance(inner, dict):
                reason = inner.get("message") or inner.get("error") or json.dumps(inner)
            else:
                reason = str(inner)
        else:
            reason = resp.text or f"HTTP {resp.status_code}"
        return error_cls(
            f"{prefix} ({self.base_url}, HTTP {resp.status_code}): {reason}",
            station_url=self.base_url,
            status_code=resp.status_code,
            reason=reason,
            transient=True if resp.status_code in _TRANSIENT_STATUS else None,
        )


def stable_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


async def reserve_gas(
    gas_budget: int,
    station_url: str,
    station_token: str,
    *,
    http: Optional[httpx.AsyncClient] = None,
    reserve_duration_secs: int = RESERVE_DURATION_SECS,
    timeout_seconds: float = 10.0,
) -> ReservationResult:
    async with GasStationClient(
        station_url,
        BearerAuth(station_token),
        timeout_seconds=timeout_seconds,
        http=http,
        reserve_duration_secs=reserve_duration_secs,
    ) as client:
        return await client.reserve_gas(gas_budget)


async def sponsor_sign_and_submit(
    reservation_id: int,
    tx_bytes: bytes,
    sender_signature: str,
    station_url: str,
    *,
    station_token: Optional[str] = None,
    http: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = 10.0,
) -> TransactionEffects:
    auth = BearerAuth(station_token) if station_token else None
    async with GasStationClient(station_url, auth, timeout_seconds=timeout_seconds, http=http) as client:
        return await client.execute_tx(reservation_id, tx_bytes, sender_signature)


reserveGas = reserve_gas
sponsorSignAndSubmit = sponsor_sign_and_submit
