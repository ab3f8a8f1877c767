from __future__ import annotations

import base64
import hashlib
import struct
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import AssemblyError
from .models import U64_MAX, CoinRef, ReservationResult, normalize_address

if TYPE_CHECKING:
    from .ledger import LedgerClient

ED25519_FLAG = 0x00
# IntentScope::TransactionData, IntentVersion::V0, AppId::Iota
INTENT_TRANSACTION = bytes([0, 0, 0])


def _uleb128(value: int) -> bytes:
    if value < 0:
        raise ValueError("uleb128 value must be >= 0")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _u64(value: int) -> bytes:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= U64_MAX:
        raise AssemblyError(f"value out of u64 range: {value!r}")
    return struct.pack("<Q", value)


def _address_bytes(address: str) -> bytes:
    return bytes.fromhex(normalize_address(address)[2:])


def _digest_bytes(digest: str) -> bytes:
    try:
        raw = base58.b58decode(digest)
    except ValueError as exc:
        raise AssemblyError(f"invalid object digest: {digest!r}") from exc
    if len(raw) != 32:
        raise AssemblyError(f"object digest must be 32 bytes: {digest!r}")
    return _uleb128(len(raw)) + raw


def blake2b256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


@runtime_checkable
class TransactionTemplate(Protocol):
    def set_sender(self, sender: str) -> None: ...

    def set_gas_owner(self, owner: str) -> None: ...

    def set_gas_payment(self, coins: Sequence[CoinRef]) -> None: ...

    def set_gas_budget(self, budget: int) -> None: ...

    def set_gas_price(self, price: int) -> None: ...

    def copy(self) -> "TransactionTemplate": ...

    def build(self) -> bytes: ...


@runtime_checkable
class Signer(Protocol):
    @property
    def address(self) -> str: ...

    def sign_transaction(self, tx_bytes: bytes) -> str: ...


class Transaction:
    """Gas-parameterizable wrapper around a BCS-encoded ``TransactionKind``.

    ``build()`` emits ``TransactionData::V1`` bytes: kind, sender, gas data
    (payment object refs, owner, price, budget) and no expiration. The gas
    owner defaults to the sender when unset.
    """

    def __init__(self, kind: bytes):
        if not isinstance(kind, (bytes, bytearray)) or not kind:
            raise ValueError("transaction kind bytes are required")
        self.kind = bytes(kind)
        self.sender: Optional[str] = None
        self.gas_owner: Optional[str] = None
        self.gas_payment: List[CoinRef] = []
        self.gas_budget: Optional[int] = None
        self.gas_price: Optional[int] = None

    @classmethod
    def from_kind_base64(cls, encoded: str) -> "Transaction":
        try:
            kind = base64.b64decode(encoded, validate=True)
        except ValueError as exc:
            raise ValueError("transaction kind must be base64") from exc
        return cls(kind)

    def set_sender(self, sender: str) -> None:
        self.sender = normalize_address(sender)

    def set_gas_owner(self, owner: str) -> None:
        self.gas_owner = normalize_address(owner)

    def set_gas_payment(self, coins: Sequence[CoinRef]) -> None:
        self.gas_payment = list(coins)

    def set_gas_budget(self, budget: int) -> None:
        if isinstance(budget, bool) or not isinstance(budget, int) or budget <= 0:
            raise ValueError("gas budget must be a positive integer")
        self.gas_budget = budget

    def set_gas_price(self, price: int) -> None:
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise ValueError("gas price must be a positive integer")
        self.gas_price = price

    def copy(self) -> "Transaction":
        tx = Transaction(self.kind)
        tx.sender = self.sender
        tx.gas_owner = self.gas_owner
        tx.gas_payment = list(self.gas_payment)
        tx.gas_budget = self.gas_budget
        tx.gas_price = self.gas_price
        return tx

    def build(self) -> bytes:
        if not self.sender:
            raise AssemblyError("transaction sender is not set", transient=False)
        if self.gas_price is None:
            raise AssemblyError("gas price is not set", transient=False)
        if self.gas_budget is None:
            raise AssemblyError("gas budget is not set", transient=False)
        if not self.gas_payment:
            raise AssemblyError("gas payment is empty", transient=False)

        out = bytearray()
        out += _uleb128(0)
        out += self.kind
        out += _address_bytes(self.sender)
        out += _uleb128(len(self.gas_payment))
        for coin in self.gas_payment:
            out += _address_bytes(coin.object_id)
            out += _u64(coin.version)
            out += _digest_bytes(coin.digest)
        out += _address_bytes(self.gas_owner or self.sender)
        out += _u64(self.gas_price)
        out += _u64(self.gas_budget)
        out += _uleb128(0)
        return bytes(out)


class Ed25519Signer:
    def __init__(self, signing_key: SigningKey):
        self._key = signing_key

    @classmethod
    def from_seed(cls, seed32: bytes) -> "Ed25519Signer":
        if not isinstance(seed32, (bytes, bytearray)) or len(seed32) != 32:
            raise ValueError("ed25519 signing key seed must be 32 bytes")
        return cls(SigningKey(bytes(seed32)))

    @classmethod
    def from_keystore(cls, entry: str) -> "Ed25519Signer":
        try:
            raw = base64.b64decode(entry, validate=True)
        except ValueError as exc:
            raise ValueError("keystore entry must be base64") from exc
        if len(raw) != 33 or raw[0] != ED25519_FLAG:
            raise ValueError("keystore entry must be flag 0x00 followed by a 32 byte ed25519 seed")
        return cls.from_seed(raw[1:])

    @classmethod
    def generate(cls) -> "Ed25519Signer":
        return cls(SigningKey.generate())

    @property
    def public_key(self) -> bytes:
        return bytes(self._key.verify_key)

    @property
    def address(self) -> str:
        return address_from_public_key(self.public_key)

    def sign_transaction(self, tx_bytes: bytes) -> str:
        digest = blake2b256(INTENT_TRANSACTION + bytes(tx_bytes))
        sig = self._key.sign(digest).signature
        return base64.b64encode(bytes([ED25519_FLAG]) + sig + self.public_key).decode("ascii")


def address_from_public_key(pub: bytes) -> str:
    if not isinstance(pub, (bytes, bytearray)) or len(pub) != 32:
        raise ValueError("ed25519 public key must be 32 bytes")
    return "0x" + blake2b256(bytes([ED25519_FLAG]) + bytes(pub)).hex()


def verify_transaction_signature(tx_bytes: bytes, serialized: str) -> str:
    try:
        raw = base64.b64decode(serialized, validate=True)
    except ValueError as exc:
        raise ValueError("invalid signature encoding") from exc
    if len(raw) != 97 or raw[0] != ED25519_FLAG:
        raise ValueError("signature must be flag 0x00 || 64 byte signature || 32 byte public key")
    sig, pub = raw[1:65], raw[65:]
    try:
        VerifyKey(pub).verify(blake2b256(INTENT_TRANSACTION + bytes(tx_bytes)), sig)
    except BadSignatureError as exc:
        raise ValueError("signature does not match transaction bytes") from exc
    return address_from_public_key(pub)


async def assemble(
    template: TransactionTemplate,
    signer: Signer,
    reservation: ReservationResult,
    *,
    gas_budget: int,
    gas_price: Optional[int] = None,
    ledger: Optional["LedgerClient"] = None,
) -> Tuple[bytes, str]:
    """Build and sign ``template`` against one station's reservation.

    Works on a copy of the template: each reservation gets its own bytes and
    its own sender signature.
    """
    tx = template.copy()
    tx.set_sender(signer.address)
    tx.set_gas_owner(reservation.sponsor_address)
    tx.set_gas_payment(reservation.gas_coins)
    tx.set_gas_budget(gas_budget)
    if gas_price is None and ledger is not None:
        try:
            gas_price = await ledger.get_reference_gas_price()
        except Exception as exc:
            raise AssemblyError(f"could not fetch reference gas price: {exc}") from exc
    if gas_price is not None:
        tx.set_gas_price(gas_price)

    tx_bytes = tx.build()
    try:
        signature = signer.sign_transaction(tx_bytes)
    except Exception as exc:
        raise AssemblyError(f"sender signing failed: {exc}", transient=False) from exc
    return tx_bytes, signature
