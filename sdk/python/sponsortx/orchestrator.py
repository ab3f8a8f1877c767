from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import httpx

from .client import GasStationClient
from .config import FaucetPolicy, GasStation, GasStationConfig, SponsorOptions
from .errors import is_failover_eligible
from .ledger import LedgerClient, explorer_tx_url, wait_for_faucet_tokens
from .models import TransactionEffects
from .transaction import Signer, TransactionTemplate, assemble

logger = logging.getLogger(__name__)

TEST_NETWORKS = ("testnet",)


class SponsorState(str, enum.Enum):
    IDLE = "Idle"
    RESERVING_PRIMARY = "ReservingPrimary"
    ASSEMBLING_PRIMARY = "AssemblingPrimary"
    SUBMITTING_PRIMARY = "SubmittingPrimary"
    RESERVING_SECONDARY = "ReservingSecondary"
    ASSEMBLING_SECONDARY = "AssemblingSecondary"
    SUBMITTING_SECONDARY = "SubmittingSecondary"
    DIRECT_SUBMIT = "DirectSubmit"
    DONE = "Done"
    FAILED = "Failed"


_ROLE_STATES = (
    (SponsorState.RESERVING_PRIMARY, SponsorState.ASSEMBLING_PRIMARY, SponsorState.SUBMITTING_PRIMARY),
    (SponsorState.RESERVING_SECONDARY, SponsorState.ASSEMBLING_SECONDARY, SponsorState.SUBMITTING_SECONDARY),
)


@dataclass
class Callbacks:
    on_success: Callable[[TransactionEffects], Any]
    on_error: Callable[[BaseException], Any]
    on_settled: Optional[Callable[[], Any]] = None


@dataclass
class ExecutionResult:
    effects: Optional[TransactionEffects]
    success: bool
    station_url: Optional[str] = None
    error: Optional[BaseException] = None


class SponsoredExecutor:
    """Runs one transaction through the gas stations, or directly.

    Sponsored mode walks reserve → assemble → submit against the primary
    station and, when that fails with a failover-eligible error and a
    secondary is configured, repeats the whole sequence against the
    secondary with a fresh reservation and a fresh signature.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        gas_stations: Optional[GasStationConfig] = None,
        options: Optional[SponsorOptions] = None,
        http: Optional[httpx.AsyncClient] = None,
        faucet_policy: Optional[FaucetPolicy] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.ledger = ledger
        self.gas_stations = gas_stations
        self.options = options or SponsorOptions()
        self.http = http
        self.faucet_policy = faucet_policy or FaucetPolicy()
        self._sleep = sleep or asyncio.sleep
        self.state = SponsorState.IDLE
        self.history: List[SponsorState] = [SponsorState.IDLE]
        self.station_url: Optional[str] = None

    def _enter(self, state: SponsorState) -> None:
        self.state = state
        self.history.append(state)

    def _reset(self) -> None:
        self.state = SponsorState.IDLE
        self.history = [SponsorState.IDLE]
        self.station_url = None

    async def execute_sponsored(self, signer: Signer, tx: TransactionTemplate) -> TransactionEffects:
        self._reset()
        if self.gas_stations is None:
            self._enter(SponsorState.FAILED)
            raise ValueError("gas station configuration is required for sponsored execution")
        stations = self.gas_stations.configured()
        if not stations:
            self._enter(SponsorState.FAILED)
            raise ValueError("no gas station configured")

        logger.info("attempting transaction with gas station fallback")
        errors: List[Exception] = []
        for role, station in enumerate(stations):
            if role == 1:
                logger.info(f"retrying with secondary gas station: {station.base_url}")
            for attempt in range(1, self.options.attempts_per_station + 1):
                try:
                    effects = await self._attempt(role, station, signer, tx)
                except Exception as exc:
                    errors.append(exc)
                    label = "primary" if role == 0 else "secondary"
                    logger.warning(
                        f"{label} gas station ({station.base_url}) failed on attempt {attempt}: {exc}"
                    )
                    if not is_failover_eligible(exc):
                        logger.error(f"permanent failure, not retrying another gas station: {exc}")
                        self._enter(SponsorState.FAILED)
                        raise
                    continue
                self.station_url = station.base_url
                self._enter(SponsorState.DONE)
                return effects
        if len(stations) == 1:
            logger.error("primary gas station failed and no secondary gas station configured")
        else:
            logger.error("secondary gas station also failed")
        self._enter(SponsorState.FAILED)
        raise errors[-1]

    async def _attempt(self, role: int, station: GasStation, signer: Signer, tx: TransactionTemplate) -> TransactionEffects:
        reserving, assembling, submitting = _ROLE_STATES[role]
        logger.info(f"attempting transaction using gas station: {station.base_url}")
        async with GasStationClient.for_station(
            station,
            timeout_seconds=self.options.timeout_seconds,
            http=self.http,
            reserve_duration_secs=self.options.reserve_duration_secs,
        ) as client:
            self._enter(reserving)
            reservation = await client.reserve_gas(self.options.gas_budget)

            self._enter(assembling)
            tx_bytes, signature = await assemble(
                tx,
                signer,
                reservation,
                gas_budget=self.options.gas_budget,
                ledger=self.ledger,
            )

            self._enter(submitting)
            effects = await client.execute_tx(reservation.reservation_id, tx_bytes, signature)
        logger.info(
            f"transaction issued via {station.base_url}: {explorer_tx_url(effects.digest)}"
        )
        return effects

    async def execute_direct(self, network: str, signer: Signer, tx: TransactionTemplate) -> TransactionEffects:
        self._reset()
        self._enter(SponsorState.DIRECT_SUBMIT)
        logger.info("not using gas station")
        sender = signer.address
        try:
            if network in TEST_NETWORKS:
                await wait_for_faucet_tokens(self.ledger, sender, self.faucet_policy, sleep=self._sleep)

            direct = tx.copy()
            direct.set_sender(sender)
            direct.set_gas_owner(sender)
            direct.set_gas_budget(self.options.gas_budget)
            direct.set_gas_price(await self.ledger.get_reference_gas_price())
            direct.set_gas_payment(await self.ledger.get_gas_coins(sender))
            tx_bytes = direct.build()
            signature = signer.sign_transaction(tx_bytes)

            digest = await self.ledger.execute_transaction(tx_bytes, [signature])
            effects = await self.ledger.wait_for_transaction(digest)
        except Exception as exc:
            logger.error(f"error executing transaction without gas station: {exc}")
            self._enter(SponsorState.FAILED)
            raise
        logger.info(f"transaction issued: {explorer_tx_url(effects.digest, network)}")
        self._enter(SponsorState.DONE)
        return effects


async def sign_and_execute(
    network: str,
    ledger: LedgerClient,
    gas_stations: Optional[GasStationConfig],
    use_gas_station: bool,
    signer: Signer,
    tx: TransactionTemplate,
    callbacks: Callbacks,
    *,
    options: Optional[SponsorOptions] = None,
    http: Optional[httpx.AsyncClient] = None,
    faucet_policy: Optional[FaucetPolicy] = None,
    executor: Optional[SponsoredExecutor] = None,
) -> ExecutionResult:
    """Execute ``tx`` and report through ``callbacks``.

    Exactly one of ``on_success`` / ``on_error`` fires per call, and
    ``on_settled`` fires once afterwards whatever happened.
    """
    executor = executor or SponsoredExecutor(
        ledger, gas_stations, options=options, http=http, faucet_policy=faucet_policy
    )
    try:
        try:
            if use_gas_station:
                effects = await executor.execute_sponsored(signer, tx)
            else:
                effects = await executor.execute_direct(network, signer, tx)
        except Exception as exc:
            callbacks.on_error(exc)
            return ExecutionResult(effects=None, success=False, error=exc)
        callbacks.on_success(effects)
        return ExecutionResult(effects=effects, success=True, station_url=executor.station_url)
    finally:
        if callbacks.on_settled is not None:
            callbacks.on_settled()


signAndExecTx = sign_and_execute
