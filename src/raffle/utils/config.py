"""
Configuration Management
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from web3 import Web3

from raffle.lottery.models import NUM_WORDS, REQUEST_CONFIRMATIONS, RaffleConfig
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = Path("config") / "raffle.conf"

DEVELOPMENT_CHAINS = ("hardhat", "localhost")

GAS_LANE_30_GWEI = "0x474e34a077df58807dbe9c96d3c009b23b3c6d0cce433e59bbf5b34f823bc56c"

# Per-network presets keyed by chain id
NETWORK_CONFIG: Dict[int, Dict[str, Any]] = {
    31337: {
        "name": "hardhat",
        "entrance_fee": Web3.to_wei("0.01", "ether"),
        "interval": 30,
        "key_hash": GAS_LANE_30_GWEI,
        "subscription_id": 0,
        "callback_gas_limit": 500000,
    },
    11155111: {
        "name": "sepolia",
        "entrance_fee": Web3.to_wei("0.01", "ether"),
        "interval": 30,
        "key_hash": GAS_LANE_30_GWEI,
        "subscription_id": 588,
        "callback_gas_limit": 500000,
        "coordinator_address": "0x8103B0A8A00be2DDC778e6e7eaa21791Cd364625",
    },
}

_ENV_SECTIONS = {
    "RAFFLE_": "raffle",
    "ORACLE_": "oracle",
    "BLOCKCHAIN_": "blockchain",
    "SERVER_": "server",
    "OPERATOR_": "operator",
}


def load_config(config_file: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from a JSON file and environment variables"""
    config: Dict[str, Any] = {}

    path = Path(config_file) if config_file else DEFAULT_CONFIG_FILE
    if path.exists():
        with open(path, 'r', encoding='utf-8') as f:
            file_config = json.load(f)
        config.update(file_config)
        logger.info(f"Loaded configuration from {path}")
    elif config_file:
        raise FileNotFoundError(f"Config file {path} not found")
    else:
        logger.warning(f"Config file {path} not found. Will only use environment variables.")

    config = _apply_env_overrides(config)
    logger.debug(f"Configuration after applying environment overrides: {json.dumps(config, indent=2)}")
    return config


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to configuration"""
    for key, value in os.environ.items():
        for prefix, section in _ENV_SECTIONS.items():
            if key.startswith(prefix):
                config.setdefault(section, {})[key[len(prefix):].lower()] = value
                break
    return config


def get_config_value(config: Dict[str, Any], key_path: str, default=None):
    """Get configuration value by dot-separated key path"""
    keys = key_path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def resolve_network(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return the preset for the configured chain id, or an empty dict."""
    chain_id = int(get_config_value(config, "blockchain.chain_id", 31337))
    preset = dict(NETWORK_CONFIG.get(chain_id, {}))
    preset.setdefault("name", get_config_value(config, "blockchain.network", f"chain-{chain_id}"))
    return preset


def is_development_network(config: Dict[str, Any]) -> bool:
    return resolve_network(config)["name"] in DEVELOPMENT_CHAINS


def build_raffle_config(config: Dict[str, Any], coordinator_address: Optional[str] = None) -> RaffleConfig:
    """Merge the network preset with explicit settings into a RaffleConfig.

    `coordinator_address` wins over both; provisioning passes the address of
    a freshly created stand-in coordinator through it.
    """
    preset = resolve_network(config)
    raffle_cfg = config.get("raffle", {})
    oracle_cfg = config.get("oracle", {})

    def _pick(section: Dict[str, Any], key: str, default=None):
        value = section.get(key)
        return preset.get(key, default) if value in (None, "") else value

    entrance_fee = raffle_cfg.get("entrance_fee_eth")
    if entrance_fee not in (None, ""):
        entrance_fee = Web3.to_wei(str(entrance_fee), "ether")
    else:
        entrance_fee = _pick(raffle_cfg, "entrance_fee")

    coordinator = coordinator_address or _pick(oracle_cfg, "coordinator_address")
    if not coordinator:
        raise ValueError(f"No VRF coordinator address configured for network {preset['name']}")
    if entrance_fee is None or _pick(raffle_cfg, "interval") is None:
        raise ValueError(f"Network {preset['name']} has no entrance fee / interval preset")

    return RaffleConfig(
        entrance_fee=int(entrance_fee),
        interval=int(_pick(raffle_cfg, "interval")),
        key_hash=str(_pick(oracle_cfg, "key_hash", GAS_LANE_30_GWEI)),
        subscription_id=int(_pick(oracle_cfg, "subscription_id", 0)),
        callback_gas_limit=int(_pick(oracle_cfg, "callback_gas_limit", 500000)),
        coordinator_address=coordinator,
        request_confirmations=int(oracle_cfg.get("request_confirmations") or REQUEST_CONFIRMATIONS),
        num_words=int(oracle_cfg.get("num_words") or NUM_WORDS),
        network=preset["name"],
    )
