import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
DEFAULT_CONFIG_PATH = "config/pipeline.yaml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(RuntimeError):
    """A required credential or endpoint is missing or malformed."""


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        def replace(match: re.Match) -> str:
            key = match.group(1)
            return os.environ.get(key, "")

        return ENV_PATTERN.sub(replace, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_yaml(path: str) -> Dict[str, Any]:
    data = yaml.safe_load(Path(path).read_text())
    return _expand_env(data or {})


@dataclass
class ChainSettings:
    rpc_url: str
    contract_address: str
    wrapped_token_address: str
    deploy_block: int = 0
    confirmations: int = 0
    batch_blocks: int = 2000
    min_batch_blocks: int = 1
    checkpoint_every_blocks: int = 50_000
    log_sleep: float = 0.5
    tx_sleep: float = 0.2
    rate_limit_per_second: float = 10.0


@dataclass
class MarketplaceSettings:
    base_url: str
    api_key: str
    collection: str
    contract_address: str
    tag: str = "magiceden"
    page_size: int = 100
    page_sleep: float = 0.6
    max_retries: int = 3
    base_delay: float = 1.0


@dataclass
class DatabaseSettings:
    url: str
    sale_chunk_size: int = 100
    owner_chunk_size: int = 500


@dataclass
class StateSettings:
    backend: str = "database"
    path: str = "state.json"
    dlq_path: str = "./dlq"


@dataclass
class Settings:
    chain: ChainSettings
    marketplace: Optional[MarketplaceSettings]
    database: DatabaseSettings
    state: StateSettings
    log_level: str = "INFO"


def _require(section: Dict[str, Any], key: str, where: str) -> str:
    value = section.get(key)
    if value is None or str(value).strip() == "":
        raise ConfigError(f"Missing required setting {where}.{key}")
    return str(value).strip()


def _optional(section: Dict[str, Any], key: str, cast, default):
    value = section.get(key)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from exc


def parse_chain(raw: Dict[str, Any]) -> ChainSettings:
    return ChainSettings(
        rpc_url=_require(raw, "rpc_url", "chain"),
        contract_address=_require(raw, "contract_address", "chain").lower(),
        wrapped_token_address=_require(raw, "wrapped_token_address", "chain").lower(),
        deploy_block=_optional(raw, "deploy_block", int, 0),
        confirmations=_optional(raw, "confirmations", int, 0),
        batch_blocks=_optional(raw, "batch_blocks", int, 2000),
        min_batch_blocks=_optional(raw, "min_batch_blocks", int, 1),
        checkpoint_every_blocks=_optional(raw, "checkpoint_every_blocks", int, 50_000),
        log_sleep=_optional(raw, "log_sleep", float, 0.5),
        tx_sleep=_optional(raw, "tx_sleep", float, 0.2),
        rate_limit_per_second=_optional(raw, "rate_limit_per_second", float, 10.0),
    )


def parse_marketplace(raw: Dict[str, Any], contract_address: str) -> MarketplaceSettings:
    """API key and collection are checked by the client itself, so jobs that
    never call the marketplace do not need them."""
    return MarketplaceSettings(
        base_url=_require(raw, "base_url", "marketplace"),
        api_key=str(raw.get("api_key") or "").strip(),
        collection=str(raw.get("collection") or "").strip(),
        contract_address=str(raw.get("contract_address") or contract_address).lower(),
        tag=_optional(raw, "tag", str, "magiceden"),
        page_size=_optional(raw, "page_size", int, 100),
        page_sleep=_optional(raw, "page_sleep", float, 0.6),
        max_retries=_optional(raw, "max_retries", int, 3),
        base_delay=_optional(raw, "base_delay", float, 1.0),
    )


def load_settings(path: str = DEFAULT_CONFIG_PATH) -> Settings:
    if not Path(path).exists():
        raise ConfigError(f"Config file not found: {path}")
    raw = load_yaml(path)

    chain = parse_chain(raw.get("chain") or {})
    marketplace_raw = raw.get("marketplace")
    marketplace = parse_marketplace(marketplace_raw, chain.contract_address) if marketplace_raw else None

    db_raw = raw.get("database") or {}
    database = DatabaseSettings(
        url=_require(db_raw, "url", "database"),
        sale_chunk_size=_optional(db_raw, "sale_chunk_size", int, 100),
        owner_chunk_size=_optional(db_raw, "owner_chunk_size", int, 500),
    )

    state_raw = raw.get("state") or {}
    state = StateSettings(
        backend=_optional(state_raw, "backend", str, "database"),
        path=_optional(state_raw, "path", str, "state.json"),
        dlq_path=_optional(state_raw, "dlq_path", str, "./dlq"),
    )
    if state.backend not in ("database", "file"):
        raise ConfigError(f"Unknown state backend: {state.backend}")

    log_level = (raw.get("logging") or {}).get("level") or os.environ.get("LOG_LEVEL") or "INFO"
    return Settings(chain=chain, marketplace=marketplace, database=database, state=state, log_level=log_level.upper())


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
