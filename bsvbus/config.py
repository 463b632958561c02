"""Runtime configuration read from environment variables."""

from __future__ import annotations

import enum
import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

__all__ = ["Network", "ConfigError", "Config"]

_SIGNED_INT = re.compile(r"[+-]?[0-9]+\Z")
_UNSIGNED_INT = re.compile(r"\+?[0-9]+\Z")

_I64_MIN = -(2**63)
_I64_MAX = 2**63 - 1
_U16_MAX = 0xFFFF


class Network(enum.Enum):
    """Bitcoin SV network the indexer follows."""

    MAINNET = "mainnet"
    TESTNET = "testnet"

    @classmethod
    def from_name(cls, name: str) -> "Network":
        """Return TESTNET for the exact name "testnet", MAINNET for anything else."""
        return cls.TESTNET if name == "testnet" else cls.MAINNET


class ConfigError(ValueError):
    """Raised when required configuration is missing."""


def _parse_int(text: str, default: int, pattern: re.Pattern, low: int, high: int) -> int:
    if pattern.match(text):
        value = int(text)
        if low <= value <= high:
            return value
    return default


@dataclass(frozen=True)
class Config:
    """Settings for the indexer, its servers and the node it talks to."""

    db_url: str
    rpc_user: str
    rpc_password: str = field(repr=False)
    bsv_node: str = "127.0.0.1:8333"
    zmq_addr: str = "tcp://127.0.0.1:28332"
    network: Network = Network.MAINNET
    start_height: int = 0
    metrics_port: int = 9090
    bind_addr: str = "0.0.0.0:8080"
    rpc_url: str = "http://127.0.0.1:8332"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        """Build a configuration from ``environ`` (``os.environ`` by default)."""
        env = os.environ if environ is None else environ

        db_url = env.get("DATABASE_URL")
        if db_url is None:
            raise ConfigError("DATABASE_URL must be set")

        config = cls(
            db_url=db_url,
            bsv_node=env.get("BSV_NODE", "127.0.0.1:8333"),
            zmq_addr=env.get("ZMQ_ADDR", "tcp://127.0.0.1:28332"),
            network=Network.from_name(env.get("NETWORK", "mainnet")),
            start_height=_parse_int(
                env.get("START_HEIGHT", "0"), 0, _SIGNED_INT, _I64_MIN, _I64_MAX
            ),
            metrics_port=_parse_int(
                env.get("METRICS_PORT", "9090"), 9090, _UNSIGNED_INT, 0, _U16_MAX
            ),
            bind_addr=env.get("BIND_ADDR", "0.0.0.0:8080"),
            rpc_url=env.get("BSV_RPC_URL", "http://127.0.0.1:8332"),
            rpc_user=env.get("BSV_RPC_USER", ""),
            rpc_password=env.get("BSV_RPC_PASSWORD", ""),
        )

        if not all((config.db_url, config.rpc_url, config.rpc_user, config.rpc_password)):
            raise ConfigError(
                "DATABASE_URL, BSV_RPC_URL, BSV_RPC_USER, and BSV_RPC_PASSWORD must be set"
            )
        return config