from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import base58

_HEX_ADDRESS = re.compile(r"0x[0-9a-fA-F]{1,64}")
U64_MAX = (1 << 64) - 1


def normalize_address(value: str) -> str:
    if not isinstance(value, str) or _HEX_ADDRESS.fullmatch(value.strip()) is None:
        raise ValueError(f"invalid address: {value!r}")
    return "0x" + value.strip()[2:].lower().rjust(64, "0")


@dataclass(frozen=True)
class CoinRef:
    object_id: str
    version: int
    digest: str

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "CoinRef":
        if not isinstance(raw, dict):
            raise ValueError("coin reference must be object")
        object_id = raw.get("objectId") or raw.get("coinObjectId")
        digest = raw.get("digest")
        version = raw.get("version")
        if not isinstance(object_id, str) or not isinstance(digest, str) or not digest:
            raise ValueError("coin reference requires objectId and digest")
        try:
            version_int = int(version)
        except (TypeError, ValueError) as exc:
            raise ValueError("coin reference version must be integer") from exc
        if not 0 <= version_int <= U64_MAX:
            raise ValueError("coin reference version out of u64 range")
        try:
            raw_digest = base58.b58decode(digest)
        except ValueError as exc:
            raise ValueError(f"coin reference digest must be base58: {digest!r}") from exc
        if len(raw_digest) != 32:
            raise ValueError(f"coin reference digest must be 32 bytes: {digest!r}")
        return cls(normalize_address(object_id), version_int, digest)

    def to_json(self) -> Dict[str, Any]:
        return {"objectId": self.object_id, "version": self.version, "digest": self.digest}


@dataclass(frozen=True)
class ReservationResult:
    sponsor_address: str
    reservation_id: int
    gas_coins: List[CoinRef]

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "ReservationResult":
        if not isinstance(raw, dict):
            raise ValueError("reservation result must be object")
        sponsor = raw.get("sponsor_address")
        reservation_id = raw.get("reservation_id")
        coins = raw.get("gas_coins")
        if not isinstance(sponsor, str):
            raise ValueError("sponsor_address is required")
        if isinstance(reservation_id, bool) or not isinstance(reservation_id, int):
            raise ValueError("reservation_id must be integer")
        if not isinstance(coins, list) or not coins:
            raise ValueError("gas_coins must be non-empty")
        return cls(normalize_address(sponsor), reservation_id, [CoinRef.from_json(c) for c in coins])


@dataclass
class TransactionEffects:
    digest: str
    status: str = "success"
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @classmethod
    def from_json(cls, raw: Dict[str, Any]) -> "TransactionEffects":
        if not isinstance(raw, dict):
            raise ValueError("effects must be object")
        digest = raw.get("transactionDigest")
        if not isinstance(digest, str) or not digest:
            raise ValueError("effects.transactionDigest is required")
        status = "success"
        error = None
        status_obj = raw.get("status")
        if isinstance(status_obj, dict):
            status = str(status_obj.get("status") or "success")
            error = status_obj.get("error")
        elif status_obj is not None:
            raise ValueError("effects.status must be object")
        return cls(digest=digest, status=status, error=error, raw=dict(raw))
