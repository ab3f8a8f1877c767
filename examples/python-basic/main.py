import asyncio
import logging
import os

from sponsortx import (
    Callbacks,
    Ed25519Signer,
    GasStationConfig,
    JsonRpcLedgerClient,
    Transaction,
    explorer_tx_url,
    sign_and_execute,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

network = os.getenv("SPONSORTX_NETWORK", "testnet")
use_gas_station = os.getenv("SPONSORTX_USE_GAS_STATION", "1") == "1"
keystore = os.getenv("SPONSORTX_KEYSTORE_ENTRY", "")
# base64 BCS TransactionKind produced by a transaction builder
tx_kind = os.environ["SPONSORTX_TX_KIND_B64"]


async def main() -> None:
    signer = Ed25519Signer.from_keystore(keystore) if keystore else Ed25519Signer.generate()
    print("sender:", signer.address)

    callbacks = Callbacks(
        on_success=lambda effects: print("executed:", explorer_tx_url(effects.digest, network)),
        on_error=lambda exc: print("failed:", exc),
        on_settled=lambda: print("settled"),
    )
    async with JsonRpcLedgerClient.for_network(network) as ledger:
        result = await sign_and_execute(
            network,
            ledger,
            GasStationConfig.from_env(),
            use_gas_station,
            signer,
            Transaction.from_kind_base64(tx_kind),
            callbacks,
        )
    if result.station_url:
        print("sponsored by:", result.station_url)


asyncio.run(main())
