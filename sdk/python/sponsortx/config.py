from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

DEFAULT_GAS_BUDGET = 50_000_000
RESERVE_DURATION_SECS = 10
ENV_PREFIX = "SPONSORTX_GAS_STATION"


@dataclass
class GasStation:
    url: str = ""
    token: str = ""

    def is_configured(self) -> bool:
        return bool(self.url and self.url.strip() and self.token and self.token.strip())

    @property
    def base_url(self) -> str:
        return self.url.strip().rstrip("/")


@dataclass
class GasStationConfig:
    stations: List[GasStation] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.stations:
            raise ValueError("at least one gas station descriptor is required")
        if len(self.stations) > 2:
            raise ValueError("at most two gas stations (primary, secondary) are supported")

    @property
    def primary(self) -> GasStation:
        return self.stations[0]

    @property
    def secondary(self) -> Optional[GasStation]:
        return self.stations[1] if len(self.stations) > 1 else None

    def configured(self) -> List[GasStation]:
        return [s for s in self.stations if s.is_configured()]

    @classmethod
    def from_mapping(cls, cfg: Mapping[str, Optional[str]]) -> "GasStationConfig":
        stations = [
            GasStation(cfg.get("gasStation1URL") or "", cfg.get("gasStation1Token") or ""),
            GasStation(cfg.get("gasStation2URL") or "", cfg.get("gasStation2Token") or ""),
        ]
        return cls(stations)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX) -> "GasStationConfig":
        env = os.environ if environ is None else environ
        stations = [
            GasStation(env.get(f"{prefix}_{n}_URL", ""), env.get(f"{prefix}_{n}_TOKEN", ""))
            for n in (1, 2)
        ]
        return cls(stations)

    def to_mapping(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for n, station in enumerate(self.stations, start=1):
            out[f"gasStation{n}URL"] = station.url
            out[f"gasStation{n}Token"] = station.token
        return out


@dataclass
class SponsorOptions:
    gas_budget: int = DEFAULT_GAS_BUDGET
    reserve_duration_secs: int = RESERVE_DURATION_SECS
    attempts_per_station: int = 1
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not isinstance(self.gas_budget, int) or self.gas_budget <= 0:
            raise ValueError("gas_budget must be a positive integer")
        if not isinstance(self.reserve_duration_secs, int) or self.reserve_duration_secs <= 0:
            raise ValueError("reserve_duration_secs must be a positive integer")
        if not isinstance(self.attempts_per_station, int) or self.attempts_per_station < 1:
            raise ValueError("attempts_per_station must be integer >= 1")


@dataclass
class FaucetPolicy:
    threshold: int = 1_000_000_000
    timeout_seconds: float = 15.0
    interval_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")
