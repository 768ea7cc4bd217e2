"""
Environment configuration.

Values come from the process environment, optionally seeded from a .env file.
Each ledger is configured by a prefixed block, e.g. for the source ledger:

    SOURCE_KIND=evm
    SOURCE_LEDGER_ID=sepolia
    SOURCE_RPC=https://...
    SOURCE_CONTRACT=0x...
    SOURCE_SECRET=0x...
    SOURCE_CHAIN_ID=11155111
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

import dotenv

from .errors import ConfigError
from .orchestrator import DepositCriteria, OrchestratorConfig
from .watcher import WatcherConfig

LEDGER_KINDS = ("memory", "evm", "soroban")


def _get(env: Mapping[str, str], name: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    value = env.get(name)
    if value is None or value == "":
        if required:
            raise ConfigError(f"{name} is not set")
        return default
    return value


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    value = _get(env, name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    value = _get(env, name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def _decimal(env: Mapping[str, str], name: str) -> Optional[Decimal]:
    value = _get(env, name)
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise ConfigError(f"{name} must be a decimal, got {value!r}") from e


@dataclass(frozen=True)
class LedgerSettings:
    kind: str
    ledger_id: str
    rpc: Optional[str] = None
    contract: Optional[str] = None
    secret: Optional[str] = None
    # memory ledgers only
    account: Optional[str] = None
    token: Optional[str] = None
    chain_id: Optional[int] = None
    decimals: int = 7
    confirmations: int = 1
    network_passphrase: Optional[str] = None

    @classmethod
    def from_env(cls, prefix: str, env: Mapping[str, str]) -> "LedgerSettings":
        kind = _get(env, f"{prefix}_KIND", "memory")
        if kind not in LEDGER_KINDS:
            raise ConfigError(f"{prefix}_KIND must be one of {', '.join(LEDGER_KINDS)}, got {kind!r}")
        chain_id = _get(env, f"{prefix}_CHAIN_ID")
        settings = cls(
            kind=kind,
            ledger_id=_get(env, f"{prefix}_LEDGER_ID", prefix.lower()),
            rpc=_get(env, f"{prefix}_RPC", required=kind != "memory"),
            contract=_get(env, f"{prefix}_CONTRACT", required=kind != "memory"),
            secret=_get(env, f"{prefix}_SECRET", required=kind != "memory"),
            account=_get(env, f"{prefix}_ACCOUNT", "resolver"),
            token=_get(env, f"{prefix}_TOKEN"),
            chain_id=_int(env, f"{prefix}_CHAIN_ID", 0) if chain_id is not None else None,
            decimals=_int(env, f"{prefix}_DECIMALS", 18 if kind == "evm" else 7),
            confirmations=_int(env, f"{prefix}_CONFIRMATIONS", 1),
            network_passphrase=_get(env, f"{prefix}_NETWORK_PASSPHRASE"),
        )
        if kind == "evm" and settings.chain_id is None:
            raise ConfigError(f"{prefix}_CHAIN_ID is not set")
        if kind == "soroban" and settings.network_passphrase is None:
            raise ConfigError(f"{prefix}_NETWORK_PASSPHRASE is not set")
        if settings.confirmations < 1:
            raise ConfigError(f"{prefix}_CONFIRMATIONS must be at least 1")
        return settings

    def watcher_config(self) -> WatcherConfig:
        return WatcherConfig(confirmations=self.confirmations)


@dataclass(frozen=True)
class Settings:
    source: LedgerSettings
    destination: LedgerSettings
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    criteria: DepositCriteria = field(default_factory=DepositCriteria)
    conversion_url: Optional[str] = None
    bridge_url: Optional[str] = None
    dest_asset: str = ""
    store_path: Optional[str] = None
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        if env is None:
            dotenv.load_dotenv()
            env = os.environ
        source = LedgerSettings.from_env("SOURCE", env)
        destination = LedgerSettings.from_env("DEST", env)
        if source.ledger_id == destination.ledger_id:
            raise ConfigError("SOURCE_LEDGER_ID and DEST_LEDGER_ID must differ")

        orchestrator = OrchestratorConfig(
            safety_margin_seconds=_int(env, "SAFETY_MARGIN_SECONDS", 3600),
            dest_lock_seconds=_int(env, "DEST_LOCK_SECONDS", 86400),
            min_dest_lock_seconds=_int(env, "MIN_DEST_LOCK_SECONDS", 600),
            retry_attempts=_int(env, "RETRY_ATTEMPTS", 5),
            retry_base_delay=_float(env, "RETRY_BASE_DELAY", 0.5),
            retry_max_delay=_float(env, "RETRY_MAX_DELAY", 30.0),
        )
        if orchestrator.safety_margin_seconds < 0:
            raise ConfigError("SAFETY_MARGIN_SECONDS must not be negative")

        source_asset = _get(env, "SOURCE_ASSET")
        criteria = DepositCriteria(
            assets=frozenset(a.strip() for a in source_asset.split(",")) if source_asset else None,
            min_amount=_decimal(env, "MIN_DEPOSIT"),
            max_amount=_decimal(env, "MAX_DEPOSIT"),
        )
        return cls(
            source=source,
            destination=destination,
            orchestrator=orchestrator,
            criteria=criteria,
            conversion_url=_get(env, "CONVERSION_URL"),
            bridge_url=_get(env, "BRIDGE_URL"),
            dest_asset=_get(env, "DEST_ASSET", ""),
            store_path=_get(env, "STORE_PATH"),
            log_level=_get(env, "LOG_LEVEL", "INFO").upper(),
            port=_int(env, "PORT", 8000),
        )
