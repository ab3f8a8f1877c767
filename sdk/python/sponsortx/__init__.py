import logging

from .client import (
    APIVersion,
    AuthStrategy,
    BearerAuth,
    GasStationClient,
    reserve_gas,
    reserveGas,
    sponsor_sign_and_submit,
    sponsorSignAndSubmit,
)
from .config import (
    DEFAULT_GAS_BUDGET,
    RESERVE_DURATION_SECS,
    FaucetPolicy,
    GasStation,
    GasStationConfig,
    SponsorOptions,
)
from .errors import (
    AssemblyError,
    FaucetTimeout,
    GasStationError,
    GasStationRejected,
    GasStationUnreachable,
    LedgerError,
    LedgerSubmissionError,
    LinkageError,
    LinkageFetchError,
    LinkageValidationError,
    SponsorError,
    SponsorSubmissionFailed,
    is_failover_eligible,
)
from .ledger import (
    IOTA_COIN_TYPE,
    NETWORKS,
    JsonRpcLedgerClient,
    LedgerClient,
    explorer_tx_url,
    wait_for_faucet_tokens,
    waitForFaucetTokens,
)
from .linkage import (
    DomainLinkageConfiguration,
    IdentityDocument,
    JwtDomainLinkageValidator,
    UrlEndpoint,
    UrlMapEndpoint,
    UrlSetEndpoint,
    first_endpoint_url,
    normalize_domain,
    parse_service_endpoint,
    validate_linkage,
    validateLinkage,
)
from .models import CoinRef, ReservationResult, TransactionEffects
from .orchestrator import (
    Callbacks,
    ExecutionResult,
    SponsoredExecutor,
    SponsorState,
    sign_and_execute,
    signAndExecTx,
)
from .transaction import Ed25519Signer, Signer, Transaction, TransactionTemplate, assemble

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "APIVersion",
    "AuthStrategy",
    "BearerAuth",
    "GasStationClient",
    "reserve_gas",
    "reserveGas",
    "sponsor_sign_and_submit",
    "sponsorSignAndSubmit",
    "DEFAULT_GAS_BUDGET",
    "RESERVE_DURATION_SECS",
    "FaucetPolicy",
    "GasStation",
    "GasStationConfig",
    "SponsorOptions",
    "AssemblyError",
    "FaucetTimeout",
    "GasStationError",
    "GasStationRejected",
    "GasStationUnreachable",
    "LedgerError",
    "LedgerSubmissionError",
    "LinkageError",
    "LinkageFetchError",
    "LinkageValidationError",
    "SponsorError",
    "SponsorSubmissionFailed",
    "is_failover_eligible",
    "IOTA_COIN_TYPE",
    "NETWORKS",
    "JsonRpcLedgerClient",
    "LedgerClient",
    "explorer_tx_url",
    "wait_for_faucet_tokens",
    "waitForFaucetTokens",
    "DomainLinkageConfiguration",
    "IdentityDocument",
    "JwtDomainLinkageValidator",
    "UrlEndpoint",
    "UrlMapEndpoint",
    "UrlSetEndpoint",
    "first_endpoint_url",
    "normalize_domain",
    "parse_service_endpoint",
    "validate_linkage",
    "validateLinkage",
    "CoinRef",
    "ReservationResult",
    "TransactionEffects",
    "Callbacks",
    "ExecutionResult",
    "SponsoredExecutor",
    "SponsorState",
    "sign_and_execute",
    "signAndExecTx",
    "Ed25519Signer",
    "Signer",
    "Transaction",
    "TransactionTemplate",
    "assemble",
]
