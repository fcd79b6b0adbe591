"""Settings loaded from the environment (and ``.env`` via python-dotenv at CLI start)."""

from __future__ import annotations

import os
from dataclasses import dataclass

from solders.pubkey import Pubkey

from .constants import BATCH_DELAY_SECONDS
from .errors import ConfigurationError, MissingConfigurationError
from .jupiter import DEFAULT_SWAP_API
from .metadata import DEFAULT_PRICE_API, DEFAULT_TOKEN_API
from .rpc import default_rpc_url


def require_env_vars(names: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Return the given environment variables or raise if any are missing/blank."""

    missing: list[str] = []
    values: dict[str, str] = {}
    for name in names:
        value = os.getenv(name)
        if value is None or not value.strip():
            missing.append(name)
            continue
        values[name] = value.strip()

    if missing:
        missing_list = ", ".join(sorted(missing))
        raise MissingConfigurationError(f"Missing configuration for: {missing_list}")

    return values


def require_env_var(name: str) -> str:
    return require_env_vars([name])[name]


def _env(name: str, default: str) -> str:
    return (os.getenv(name) or "").strip() or default


def parse_pubkey(value: str, *, name: str) -> Pubkey:
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} is not a valid public key: {value!r}") from exc


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    fee_wallet: Pubkey | None
    swap_api: str = DEFAULT_SWAP_API
    token_api: str = DEFAULT_TOKEN_API
    price_api: str = DEFAULT_PRICE_API
    batch_delay_seconds: float = BATCH_DELAY_SECONDS

    @classmethod
    def from_environment(cls) -> Settings:
        fee_wallet = (os.getenv("FEE_WALLET") or "").strip()
        delay_raw = _env("RECLAIM_BATCH_DELAY_SECONDS", str(BATCH_DELAY_SECONDS))
        try:
            delay = float(delay_raw)
        except ValueError as exc:
            raise ConfigurationError(f"RECLAIM_BATCH_DELAY_SECONDS must be a number: {delay_raw!r}") from exc
        if delay < 0:
            raise ConfigurationError("RECLAIM_BATCH_DELAY_SECONDS must not be negative")

        return cls(
            rpc_url=default_rpc_url(),
            fee_wallet=parse_pubkey(fee_wallet, name="FEE_WALLET") if fee_wallet else None,
            swap_api=_env("JUPITER_SWAP_API", DEFAULT_SWAP_API),
            token_api=_env("JUPITER_TOKEN_API", DEFAULT_TOKEN_API),
            price_api=_env("JUPITER_PRICE_API", DEFAULT_PRICE_API),
            batch_delay_seconds=delay,
        )
