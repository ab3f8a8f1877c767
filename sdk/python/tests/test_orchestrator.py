import base64
import json

import base58
import httpx
import pytest

from sponsortx.config import FaucetPolicy, GasStation, GasStationConfig, SponsorOptions
from sponsortx.errors import FaucetTimeout, GasStationRejected, LedgerSubmissionError, SponsorSubmissionFailed
from sponsortx.ledger import IOTA_COIN_TYPE
from sponsortx.models import CoinRef, TransactionEffects
from sponsortx.orchestrator import Callbacks, SponsoredExecutor, SponsorState, sign_and_execute
from sponsortx.transaction import Ed25519Signer, Transaction, verify_transaction_signature

STATION_A = "https://gas-a.example"
STATION_B = "https://gas-b.example"
SPONSOR_A = "0x" + "aa" * 32
SPONSOR_B = "0x" + "bb" * 32
DIGEST = base58.b58encode(bytes(range(32))).decode("ascii")
KIND = b"\x00\x01\x00\x00"


def _reserve_ok(sponsor, reservation_id, coin_byte):
    return httpx.Response(
        200,
        json={
            "result": {
                "sponsor_address": sponsor,
                "reservation_id": reservation_id,
                "gas_coins": [{"objectId": "0x" + coin_byte * 32, "version": 4, "digest": DIGEST}],
            },
            "error": None,
        },
    )


def _execute_ok(digest):
    return httpx.Response(200, json={"effects": {"transactionDigest": digest, "status": {"status": "success"}}, "error": None})


class StationStub:
    def __init__(self, routes):
        self.routes = {k: list(v) for k, v in routes.items()}
        self.calls = []

    def handler(self, req: httpx.Request) -> httpx.Response:
        body = json.loads(req.content.decode("utf-8")) if req.content else None
        self.calls.append((req.url.host, req.url.path, body, req.headers.get("authorization")))
        queue = self.routes[(req.url.host, req.url.path)]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def calls_to(self, host, path=None):
        return [c for c in self.calls if c[0] == host and (path is None or c[1] == path)]


class FakeLedger:
    def __init__(self, balances=(2_000_000_000,), gas_price=1000, execute_error=None):
        self.balances = list(balances)
        self.gas_price = gas_price
        self.execute_error = execute_error
        self.faucet_requests = []
        self.executed = []

    async def get_balance(self, owner, coin_type=IOTA_COIN_TYPE):
        if len(self.balances) > 1:
            return self.balances.pop(0)
        return self.balances[0]

    async def get_reference_gas_price(self):
        return self.gas_price

    async def get_gas_coins(self, owner, coin_type=IOTA_COIN_TYPE):
        return [CoinRef("0x" + "ee" * 32, 2, DIGEST)]

    async def execute_transaction(self, tx_bytes, signatures):
        if self.execute_error is not None:
            raise self.execute_error
        self.executed.append((tx_bytes, list(signatures)))
        return "DirectDigest"

    async def wait_for_transaction(self, digest):
        return TransactionEffects(digest=digest)

    async def request_faucet(self, recipient):
        self.faucet_requests.append(recipient)


class Recorder:
    def __init__(self, fail_on_success=False):
        self.successes = []
        self.errors = []
        self.settled = 0
        self.fail_on_success = fail_on_success

    def callbacks(self):
        return Callbacks(on_success=self.on_success, on_error=self.errors.append, on_settled=self.on_settled)

    def on_success(self, effects):
        self.successes.append(effects)
        if self.fail_on_success:
            raise RuntimeError("ui update failed")

    def on_settled(self):
        self.settled += 1


def _signer():
    return Ed25519Signer.from_seed(bytes([1] * 32))


def _two_stations(second_token="tok-b"):
    return GasStationConfig([GasStation(STATION_A, "tok-a"), GasStation(STATION_B, second_token)])


async def _run(stub, stations, recorder, ledger=None, options=None):
    http = httpx.AsyncClient(transport=httpx.MockTransport(stub.handler))
    executor = SponsoredExecutor(ledger or FakeLedger(), stations, options=options, http=http)
    result = await sign_and_execute(
        "testnet",
        executor.ledger,
        stations,
        True,
        _signer(),
        Transaction(KIND),
        recorder.callbacks(),
        executor=executor,
    )
    return executor, result


@pytest.mark.asyncio
async def test_primary_submit_failure_fails_over_to_secondary():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_A, 1, "cc")],
            ("gas-a.example", "/v1/execute_tx"): [httpx.Response(500, json={"error": "boom"})],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
            ("gas-b.example", "/v1/execute_tx"): [_execute_ok("DigestB")],
        }
    )
    recorder = Recorder()
    executor, result = await _run(stub, _two_stations(), recorder)

    assert result.success
    assert result.effects.digest == "DigestB"
    assert result.station_url == STATION_B
    assert [e.digest for e in recorder.successes] == ["DigestB"]
    assert recorder.errors == []
    assert recorder.settled == 1
    assert executor.history == [
        SponsorState.IDLE,
        SponsorState.RESERVING_PRIMARY,
        SponsorState.ASSEMBLING_PRIMARY,
        SponsorState.SUBMITTING_PRIMARY,
        SponsorState.RESERVING_SECONDARY,
        SponsorState.ASSEMBLING_SECONDARY,
        SponsorState.SUBMITTING_SECONDARY,
        SponsorState.DONE,
    ]

    _, _, body_a, auth_a = stub.calls_to("gas-a.example", "/v1/execute_tx")[0]
    _, _, body_b, auth_b = stub.calls_to("gas-b.example", "/v1/execute_tx")[0]
    assert auth_a == "Bearer tok-a"
    assert auth_b == "Bearer tok-b"
    assert body_a["reservation_id"] == 1
    assert body_b["reservation_id"] == 2
    bytes_a = base64.b64decode(body_a["tx_bytes"])
    bytes_b = base64.b64decode(body_b["tx_bytes"])
    assert bytes.fromhex("aa" * 32) in bytes_a
    assert bytes.fromhex("bb" * 32) in bytes_b
    assert bytes.fromhex("aa" * 32) not in bytes_b
    assert body_a["user_sig"] != body_b["user_sig"]
    assert verify_transaction_signature(bytes_b, body_b["user_sig"]) == _signer().address


@pytest.mark.asyncio
async def test_primary_reservation_failure_reserves_secondary_exactly_once():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [httpx.ConnectError("refused")],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 7, "dd")],
            ("gas-b.example", "/v1/execute_tx"): [_execute_ok("DigestB")],
        }
    )
    recorder = Recorder()
    executor, result = await _run(stub, _two_stations(), recorder)

    assert result.success
    assert len(stub.calls_to("gas-b.example", "/v1/reserve_gas")) == 1
    assert stub.calls_to("gas-a.example", "/v1/execute_tx") == []
    assert executor.history[:3] == [SponsorState.IDLE, SponsorState.RESERVING_PRIMARY, SponsorState.RESERVING_SECONDARY]


@pytest.mark.asyncio
async def test_no_secondary_reports_primary_error_and_never_contacts_secondary():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [httpx.Response(503, json={"error": "maintenance"})],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
        }
    )
    recorder = Recorder()
    executor, result = await _run(stub, _two_stations(second_token=""), recorder)

    assert not result.success
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], GasStationRejected)
    assert recorder.errors[0].station_url == STATION_A
    assert recorder.errors[0].reason == "maintenance"
    assert stub.calls_to("gas-b.example") == []
    assert recorder.successes == []
    assert recorder.settled == 1
    assert executor.state == SponsorState.FAILED


@pytest.mark.asyncio
async def test_both_stations_fail_reports_secondary_error():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [httpx.Response(500, json={"error": "primary down"})],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
            ("gas-b.example", "/v1/execute_tx"): [httpx.Response(502, text="bad gateway")],
        }
    )
    recorder = Recorder()
    executor, result = await _run(stub, _two_stations(), recorder)

    assert not result.success
    assert len(recorder.errors) == 1
    assert isinstance(recorder.errors[0], SponsorSubmissionFailed)
    assert recorder.errors[0].station_url == STATION_B
    assert result.error is recorder.errors[0]
    assert recorder.settled == 1
    assert executor.history[-1] == SponsorState.FAILED


@pytest.mark.asyncio
async def test_bad_coin_digest_from_primary_fails_over_to_secondary():
    bad_reservation = httpx.Response(
        200,
        json={
            "result": {
                "sponsor_address": SPONSOR_A,
                "reservation_id": 1,
                "gas_coins": [{"objectId": "0x" + "aa" * 32, "version": 1, "digest": "not-base58!"}],
            },
            "error": None,
        },
    )
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [bad_reservation],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
            ("gas-b.example", "/v1/execute_tx"): [_execute_ok("DigestB")],
        }
    )
    recorder = Recorder()
    executor, result = await _run(stub, _two_stations(), recorder)

    assert result.success
    assert result.station_url == STATION_B
    assert len(stub.calls_to("gas-b.example", "/v1/reserve_gas")) == 1
    assert stub.calls_to("gas-a.example", "/v1/execute_tx") == []
    assert SponsorState.RESERVING_SECONDARY in executor.history
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_unencodable_coin_in_primary_reservation_fails_over(monkeypatch):
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_A, 1, "cc")],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
            ("gas-b.example", "/v1/execute_tx"): [_execute_ok("DigestB")],
        }
    )
    original = CoinRef.from_json

    def short_digest_for_primary(raw):
        coin = original(raw)
        if coin.object_id == "0x" + "cc" * 32:
            return CoinRef(coin.object_id, coin.version, base58.b58encode(b"short").decode("ascii"))
        return coin

    monkeypatch.setattr(CoinRef, "from_json", staticmethod(short_digest_for_primary))
    recorder = Recorder()
    executor, result = await _run(stub, _two_stations(), recorder)

    assert result.success
    assert result.station_url == STATION_B
    assert stub.calls_to("gas-a.example", "/v1/execute_tx") == []
    assert SponsorState.ASSEMBLING_PRIMARY in executor.history


@pytest.mark.asyncio
async def test_exhausted_stations_raise_last_error_from_executor():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [httpx.Response(503, json={"error": "first"})],
            ("gas-b.example", "/v1/reserve_gas"): [httpx.Response(503, json={"error": "second"})],
        }
    )
    http = httpx.AsyncClient(transport=httpx.MockTransport(stub.handler))
    executor = SponsoredExecutor(FakeLedger(), _two_stations(), options=SponsorOptions(attempts_per_station=2), http=http)

    with pytest.raises(GasStationRejected) as info:
        await executor.execute_sponsored(_signer(), Transaction(KIND))

    assert info.value.station_url == STATION_B
    assert info.value.reason == "second"
    assert len(stub.calls_to("gas-b.example", "/v1/reserve_gas")) == 2
    assert executor.state == SponsorState.FAILED


@pytest.mark.asyncio
async def test_onchain_failure_at_primary_does_not_fail_over():
    failed = httpx.Response(
        200, json={"effects": {"transactionDigest": "DigestA", "status": {"status": "failure", "error": "MoveAbort"}}}
    )
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_A, 1, "cc")],
            ("gas-a.example", "/v1/execute_tx"): [failed],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
        }
    )
    recorder = Recorder()
    await _run(stub, _two_stations(), recorder)

    assert stub.calls_to("gas-b.example") == []
    assert len(recorder.errors) == 1
    assert recorder.errors[0].transient is False


@pytest.mark.asyncio
async def test_read_timeout_after_submit_does_not_fail_over():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_A, 1, "cc")],
            ("gas-a.example", "/v1/execute_tx"): [httpx.ReadTimeout("timed out")],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
            ("gas-b.example", "/v1/execute_tx"): [_execute_ok("DigestB")],
        }
    )
    recorder = Recorder()
    executor, result = await _run(stub, _two_stations(), recorder)

    assert not result.success
    assert stub.calls_to("gas-b.example") == []
    assert isinstance(recorder.errors[0], SponsorSubmissionFailed)
    assert recorder.errors[0].transient is False
    assert executor.state == SponsorState.FAILED


@pytest.mark.asyncio
async def test_attempts_per_station_retries_with_fresh_reservation():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_A, 1, "cc"), _reserve_ok(SPONSOR_A, 2, "cc")],
            ("gas-a.example", "/v1/execute_tx"): [httpx.Response(500, json={"error": "busy"}), _execute_ok("DigestA")],
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 3, "dd")],
        }
    )
    recorder = Recorder()
    _, result = await _run(stub, _two_stations(), recorder, options=SponsorOptions(attempts_per_station=2))

    assert result.success
    assert result.station_url == STATION_A
    assert [c[2]["reservation_id"] for c in stub.calls_to("gas-a.example", "/v1/execute_tx")] == [1, 2]
    assert stub.calls_to("gas-b.example") == []


@pytest.mark.asyncio
async def test_unconfigured_primary_is_skipped():
    stub = StationStub(
        {
            ("gas-b.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_B, 2, "dd")],
            ("gas-b.example", "/v1/execute_tx"): [_execute_ok("DigestB")],
        }
    )
    stations = GasStationConfig([GasStation("", ""), GasStation(STATION_B, "tok-b")])
    recorder = Recorder()
    executor, result = await _run(stub, stations, recorder)

    assert result.success
    assert SponsorState.RESERVING_PRIMARY in executor.history
    assert SponsorState.RESERVING_SECONDARY not in executor.history


@pytest.mark.asyncio
async def test_no_configured_station_reports_error():
    stub = StationStub({})
    recorder = Recorder()
    _, result = await _run(stub, GasStationConfig([GasStation("", "")]), recorder)
    assert not result.success
    assert isinstance(recorder.errors[0], ValueError)
    assert stub.calls == []
    assert recorder.settled == 1


@pytest.mark.asyncio
async def test_settle_fires_once_when_success_callback_raises():
    stub = StationStub(
        {
            ("gas-a.example", "/v1/reserve_gas"): [_reserve_ok(SPONSOR_A, 1, "cc")],
            ("gas-a.example", "/v1/execute_tx"): [_execute_ok("DigestA")],
        }
    )
    recorder = Recorder(fail_on_success=True)
    with pytest.raises(RuntimeError):
        await _run(stub, _two_stations(), recorder)
    assert recorder.settled == 1
    assert recorder.errors == []


@pytest.mark.asyncio
async def test_direct_path_waits_for_faucet_then_submits():
    slept = []

    async def sleep(seconds):
        slept.append(seconds)

    ledger = FakeLedger(balances=[0, 0, 5_000])
    executor = SponsoredExecutor(ledger, faucet_policy=FaucetPolicy(threshold=5_000), sleep=sleep)
    recorder = Recorder()
    result = await sign_and_execute(
        "testnet", ledger, None, False, _signer(), Transaction(KIND), recorder.callbacks(), executor=executor
    )

    assert result.success
    assert result.effects.digest == "DirectDigest"
    assert ledger.faucet_requests == [_signer().address]
    assert slept == [1.0, 1.0]
    assert len(ledger.executed) == 1
    tx_bytes, sigs = ledger.executed[0]
    assert verify_transaction_signature(tx_bytes, sigs[0]) == _signer().address
    assert executor.history == [SponsorState.IDLE, SponsorState.DIRECT_SUBMIT, SponsorState.DONE]
    assert recorder.settled == 1


@pytest.mark.asyncio
async def test_direct_path_faucet_timeout_submits_nothing():
    async def sleep(seconds):
        return None

    ledger = FakeLedger(balances=[0])
    executor = SponsoredExecutor(
        ledger, faucet_policy=FaucetPolicy(threshold=5_000, timeout_seconds=3, interval_seconds=1), sleep=sleep
    )
    recorder = Recorder()
    result = await sign_and_execute(
        "testnet", ledger, None, False, _signer(), Transaction(KIND), recorder.callbacks(), executor=executor
    )

    assert not result.success
    assert isinstance(recorder.errors[0], FaucetTimeout)
    assert ledger.executed == []
    assert recorder.settled == 1


@pytest.mark.asyncio
async def test_direct_path_on_mainnet_skips_faucet_and_ledger_error_is_terminal():
    ledger = FakeLedger(balances=[0], execute_error=LedgerSubmissionError("rejected"))
    recorder = Recorder()
    result = await sign_and_execute(
        "mainnet", ledger, _two_stations(), False, _signer(), Transaction(KIND), recorder.callbacks()
    )

    assert not result.success
    assert ledger.faucet_requests == []
    assert isinstance(recorder.errors[0], LedgerSubmissionError)
    assert recorder.settled == 1
