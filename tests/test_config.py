from decimal import Decimal

import pytest

from swapengine.config import LedgerSettings, Settings
from swapengine.engine import build_engine, build_ledger
from swapengine.errors import ConfigError
from swapengine.ledgers.memory import InMemoryLedger
from swapengine.store import InMemorySwapStore, JsonSwapStore


def test_defaults_are_two_memory_ledgers():
    settings = Settings.from_env({})
    assert settings.source.kind == "memory"
    assert settings.source.ledger_id == "source"
    assert settings.destination.ledger_id == "dest"
    assert settings.orchestrator.safety_margin_seconds == 3600
    assert settings.orchestrator.min_dest_lock_seconds == 600
    assert settings.criteria.assets is None
    assert settings.port == 8000


def test_orchestrator_and_criteria_from_env():
    settings = Settings.from_env(
        {
            "SAFETY_MARGIN_SECONDS": "7200",
            "DEST_LOCK_SECONDS": "43200",
            "RETRY_BASE_DELAY": "0.1",
            "SOURCE_ASSET": "USDC, EURC",
            "MIN_DEPOSIT": "1.5",
            "MAX_DEPOSIT": "1000",
            "LOG_LEVEL": "debug",
        }
    )
    assert settings.orchestrator.safety_margin_seconds == 7200
    assert settings.orchestrator.dest_lock_seconds == 43200
    assert settings.orchestrator.retry_base_delay == 0.1
    assert settings.criteria.assets == frozenset({"USDC", "EURC"})
    assert settings.criteria.min_amount == Decimal("1.5")
    assert settings.criteria.max_amount == Decimal(1000)
    assert settings.log_level == "DEBUG"


def test_evm_ledger_needs_endpoint_and_chain_id():
    with pytest.raises(ConfigError, match="SOURCE_RPC"):
        Settings.from_env({"SOURCE_KIND": "evm"})

    env = {"SOURCE_KIND": "evm", "SOURCE_RPC": "http://localhost:8545", "SOURCE_CONTRACT": "0x1", "SOURCE_SECRET": "0x2"}
    with pytest.raises(ConfigError, match="CHAIN_ID"):
        Settings.from_env(env)

    settings = Settings.from_env({**env, "SOURCE_CHAIN_ID": "11155111"})
    assert settings.source.chain_id == 11155111
    assert settings.source.decimals == 18


def test_soroban_ledger_needs_passphrase():
    env = {"DEST_KIND": "soroban", "DEST_RPC": "http://rpc", "DEST_CONTRACT": "C1", "DEST_SECRET": "S1"}
    with pytest.raises(ConfigError, match="NETWORK_PASSPHRASE"):
        Settings.from_env(env)


@pytest.mark.parametrize(
    "env",
    [
        {"SOURCE_LEDGER_ID": "same", "DEST_LEDGER_ID": "same"},
        {"SOURCE_KIND": "bitcoin"},
        {"PORT": "eighty"},
        {"SOURCE_CHAIN_ID": "sepolia"},
        {"MAX_DEPOSIT": "lots"},
        {"DEST_CONFIRMATIONS": "0"},
        {"SAFETY_MARGIN_SECONDS": "-1"},
    ],
)
def test_invalid_settings_are_rejected(env):
    with pytest.raises(ConfigError):
        Settings.from_env(env)


def test_watcher_config_carries_confirmations():
    settings = LedgerSettings.from_env("SOURCE", {"SOURCE_CONFIRMATIONS": "12"})
    assert settings.watcher_config().confirmations == 12


def test_build_memory_engine(tmp_path):
    ledger = build_ledger(LedgerSettings.from_env("SOURCE", {"SOURCE_ACCOUNT": "maker"}))
    assert isinstance(ledger, InMemoryLedger)
    assert ledger.account == "maker"

    engine = build_engine(Settings.from_env({}))
    assert isinstance(engine.store, InMemorySwapStore)
    assert [w.ledger_id for w in engine.watchers] == ["source", "dest"]

    engine = build_engine(Settings.from_env({"STORE_PATH": str(tmp_path / "state")}))
    assert isinstance(engine.store, JsonSwapStore)
