from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # type: ignore

from .backoff import Backoff


@dataclass(frozen=True)
class BrokerSettings:
    redis_url: str
    partitions: int = 4
    publish_timeout_seconds: float = 5.0
    visibility_timeout_seconds: float = 30.0
    reconnect_initial_delay: float = 0.5
    reconnect_max_delay: float = 30.0
    reconnect_ceiling_seconds: float = 300.0
    max_block_ms: int = 30_000

    @property
    def reconnect_backoff(self) -> Backoff:
        return Backoff(initial_delay=self.reconnect_initial_delay, max_delay=self.reconnect_max_delay)


@dataclass(frozen=True)
class ConsumerSettings:
    max_attempts: int = 5
    retry_initial_delay: float = 0.5
    retry_max_delay: float = 30.0
    handler_timeout_seconds: float = 10.0
    block_ms: int = 5000
    read_count: int = 10
    processed_ttl_seconds: int = 7 * 24 * 3600
    # Static partition ownership among consumer-group members.
    member_index: int = 0
    member_count: int = 1

    @property
    def retry_backoff(self) -> Backoff:
        return Backoff(initial_delay=self.retry_initial_delay, max_delay=self.retry_max_delay)

    def owned_partitions(self, partitions: int) -> list[int]:
        return [p for p in range(partitions) if p % self.member_count == self.member_index]


@dataclass(frozen=True)
class OutboxSettings:
    poll_interval_seconds: float = 1.0
    max_attempts: int = 10
    batch_size: int = 100
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 60.0

    @property
    def retry_backoff(self) -> Backoff:
        return Backoff(initial_delay=self.retry_initial_delay, max_delay=self.retry_max_delay)


@dataclass(frozen=True)
class GatewaySettings:
    routes_path: str = "config/routes.yaml"
    jwt_secret: str = ""
    jwt_algorithms: tuple = ("HS256",)
    forward_timeout_seconds: float = 10.0
    unhealthy_cooldown_seconds: float = 15.0


@dataclass(frozen=True)
class Settings:
    env: str
    broker: BrokerSettings
    consumer: ConsumerSettings = field(default_factory=ConsumerSettings)
    outbox: OutboxSettings = field(default_factory=OutboxSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    postgres_dsn: Optional[str] = None
    ports: Dict[str, int] = field(default_factory=dict)

    def port_for(self, service: str, default: int = 8000) -> int:
        return int(self.ports.get(service, default))


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"settings section '{name}' must be a mapping")
    return section


def load_settings(path: str | Path | None = None) -> Settings:
    p = Path(path or os.getenv("EVENTFABRIC_SETTINGS", "config/settings.yaml"))
    data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    broker = _section(data, "broker")
    consumer = _section(data, "consumer")
    outbox = _section(data, "outbox")
    gateway = _section(data, "gateway")
    postgres = _section(data, "postgres")

    # Env overrides (used for compose profile isolation).
    redis_url = os.getenv("EVENTFABRIC_REDIS_URL") or broker.get("redis_url") or "redis://localhost:6379/0"
    postgres_dsn = os.getenv("EVENTFABRIC_POSTGRES_DSN") or postgres.get("dsn")
    jwt_secret = os.getenv("EVENTFABRIC_JWT_SECRET") or gateway.get("jwt_secret", "")
    routes_path = os.getenv("EVENTFABRIC_ROUTES_PATH") or gateway.get("routes_path", "config/routes.yaml")

    broker_kwargs = {k: v for k, v in broker.items() if k != "redis_url"}
    gateway_kwargs = {k: v for k, v in gateway.items() if k not in ("jwt_secret", "routes_path")}
    if "jwt_algorithms" in gateway_kwargs:
        gateway_kwargs["jwt_algorithms"] = tuple(gateway_kwargs["jwt_algorithms"])

    member_index = os.getenv("EVENTFABRIC_CONSUMER_MEMBER_INDEX")
    if member_index is not None:
        consumer = {**consumer, "member_index": int(member_index)}

    return Settings(
        env=data.get("env", "dev"),
        broker=BrokerSettings(redis_url=redis_url, **broker_kwargs),
        consumer=ConsumerSettings(**consumer),
        outbox=OutboxSettings(**outbox),
        gateway=GatewaySettings(jwt_secret=jwt_secret, routes_path=routes_path, **gateway_kwargs),
        postgres_dsn=postgres_dsn or None,
        ports={str(k): int(v) for k, v in (data.get("ports") or {}).items()},
    )
