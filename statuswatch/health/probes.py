"""Probe engine — runs one health check against one endpoint.

Supports: HTTP(S), TCP connect, ICMP ping (system ``ping``), game-server query.
Every probe carries its own deadline and never raises: all failure paths
come back as ``CheckResult(success=False, error=...)``.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import asdict, dataclass
from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, Field

from ..config import settings
from ..errors import MisconfiguredTargetError
from ..targets.models import MonitoringSettings
from .games import GAMES, PROTOCOLS, close_writer

logger = logging.getLogger(__name__)

_PING_TIME_RE = re.compile(r"time[=:]?\s*([0-9.]+)\s*ms", re.IGNORECASE)


# ── Models ───────────────────────────────────────────────────────────────────


@dataclass
class CheckResult:
    """Outcome of a single probe. Never persisted as-is."""

    success: bool
    status_code: int | None = None
    response_time_ms: float | None = None
    error: str | None = None
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _ProbeBase(BaseModel):
    timeout: float = Field(default=10, gt=0)  # seconds

    @property
    def timeout_ms(self) -> int:
        return int(self.timeout * 1000)


class HttpProbeConfig(_ProbeBase):
    type: Literal["http"] = "http"
    url: str
    method: Literal["GET", "HEAD", "POST"] = "GET"
    expected_status_code: int = 200


class TcpProbeConfig(_ProbeBase):
    type: Literal["tcp"] = "tcp"
    host: str
    port: int


class PingProbeConfig(_ProbeBase):
    type: Literal["ping"] = "ping"
    host: str


class GameQueryProbeConfig(_ProbeBase):
    type: Literal["game-query"] = "game-query"
    host: str
    port: int | None = None
    game_type: str


ProbeConfig = Annotated[
    Union[HttpProbeConfig, TcpProbeConfig, PingProbeConfig, GameQueryProbeConfig],
    Field(discriminator="type"),
]


# ── Config building ──────────────────────────────────────────────────────────


def config_problem(m: MonitoringSettings) -> str | None:
    """Why ``m`` cannot be probed, or None when the required fields are there."""
    if m.type == "http":
        if not m.url:
            return "No monitoring URL configured for HTTP monitoring"
    elif m.type == "tcp":
        if not m.host or not m.port:
            return "Host and port are required for TCP monitoring"
    elif m.type == "ping":
        if not m.host:
            return "Host is required for Ping monitoring"
    elif m.type == "game-query":
        if not m.host or not m.game_type:
            return "Host and game type are required for game-query monitoring"
        if m.game_type not in GAMES:
            return f"No query protocol for game type '{m.game_type}'"
    else:
        return f"Unknown monitoring type: {m.type}"
    return None


def build_probe_config(m: MonitoringSettings) -> ProbeConfig:
    """Turn a stored monitoring group into a typed probe config.

    Raises ``MisconfiguredTargetError`` when required type-specific fields
    are missing.
    """
    problem = config_problem(m)
    if problem:
        raise MisconfiguredTargetError(problem)

    if m.type == "http":
        return HttpProbeConfig(
            url=m.url, method=m.method,
            expected_status_code=m.expected_status_code, timeout=m.timeout,
        )
    if m.type == "tcp":
        return TcpProbeConfig(host=m.host, port=m.port, timeout=m.timeout)
    if m.type == "ping":
        return PingProbeConfig(host=m.host, timeout=m.timeout)
    return GameQueryProbeConfig(host=m.host, port=m.port, game_type=m.game_type, timeout=m.timeout)


# ── Probe runners ────────────────────────────────────────────────────────────


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000, 1)


async def probe_http(
    config: HttpProbeConfig, transport: httpx.AsyncBaseTransport | None = None,
) -> CheckResult:
    """HTTP(S) check — follows redirects, compares the final status code."""
    scheme = urlparse(config.url).scheme
    if scheme not in ("http", "https"):
        return CheckResult(
            success=False, error="Invalid URL protocol. Only HTTP and HTTPS are supported.",
        )

    t0 = time.perf_counter()
    try:
        async with httpx.AsyncClient(
            timeout=config.timeout,
            follow_redirects=True,
            headers={"User-Agent": settings.check_user_agent},
            transport=transport,
        ) as client:
            resp = await asyncio.wait_for(
                client.request(config.method, config.url), timeout=config.timeout,
            )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        return CheckResult(
            success=False, response_time_ms=_elapsed_ms(t0),
            error=f"Request timeout after {config.timeout_ms}ms",
        )
    except Exception as e:
        return CheckResult(
            success=False, response_time_ms=_elapsed_ms(t0),
            error=str(e) or type(e).__name__,
        )

    latency = _elapsed_ms(t0)
    success = resp.status_code == config.expected_status_code
    logger.debug("HTTP %s %s -> %d (final %s)", config.method, config.url, resp.status_code, resp.url)
    return CheckResult(
        success=success,
        status_code=resp.status_code,
        response_time_ms=latency,
        error=None if success else f"Expected status {config.expected_status_code}, got {resp.status_code}",
    )


async def probe_tcp(config: TcpProbeConfig) -> CheckResult:
    """Raw TCP connect; no data is exchanged."""
    t0 = time.perf_counter()
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(config.host, config.port), timeout=config.timeout,
        )
    except asyncio.TimeoutError:
        return CheckResult(
            success=False, response_time_ms=_elapsed_ms(t0),
            error=f"Connection timeout after {config.timeout_ms}ms",
        )
    except OSError as e:
        return CheckResult(
            success=False, response_time_ms=_elapsed_ms(t0),
            error=str(e) or "Connection failed",
        )

    latency = _elapsed_ms(t0)
    await close_writer(writer)
    return CheckResult(
        success=True, response_time_ms=latency, details=f"TCP port {config.port} is open",
    )


async def probe_ping(config: PingProbeConfig) -> CheckResult:
    """Single ICMP echo via the system ``ping`` binary."""
    if config.host.startswith("-"):
        return CheckResult(success=False, error=f"Invalid host: {config.host}")

    wait_sec = max(1, math.ceil(config.timeout))
    t0 = time.perf_counter()
    try:
        proc = await asyncio.create_subprocess_exec(
            "ping", "-c", "1", "-W", str(wait_sec), config.host,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return CheckResult(success=False, error=f"Ping failed: {e}")

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=config.timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CheckResult(
            success=False, response_time_ms=_elapsed_ms(t0),
            error=f"Ping timeout after {config.timeout_ms}ms",
        )

    elapsed = _elapsed_ms(t0)
    output = stdout.decode("utf-8", errors="replace")
    if "1 received" in output or "1 packets received" in output:
        match = _PING_TIME_RE.search(output)
        rtt = float(match.group(1)) if match else elapsed
        return CheckResult(success=True, response_time_ms=rtt, details="Host is reachable")

    return CheckResult(
        success=False, response_time_ms=elapsed, error="Host unreachable or packet lost",
    )


async def probe_game(config: GameQueryProbeConfig) -> CheckResult:
    """Query a game server and require a parseable state payload."""
    game = GAMES.get(config.game_type)
    query = PROTOCOLS.get(game.protocol) if game else None
    if query is None:
        # Configuration problem: nothing was sent over the wire.
        return CheckResult(
            success=False, error=f"No query protocol for game type '{config.game_type}'",
        )

    port = config.port or game.default_port
    t0 = time.perf_counter()
    try:
        state = await asyncio.wait_for(query(config.host, port), timeout=config.timeout)
    except asyncio.TimeoutError:
        return CheckResult(
            success=False, response_time_ms=_elapsed_ms(t0),
            error=f"Game server query timeout after {config.timeout_ms}ms",
        )
    except Exception as e:
        return CheckResult(
            success=False, response_time_ms=_elapsed_ms(t0),
            error=str(e) or "Game server query failed",
        )

    return CheckResult(
        success=True,
        response_time_ms=_elapsed_ms(t0),
        details=f"Server online - {state.players}/{state.max_players} players",
    )


# Dispatcher
PROBE_RUNNERS = {
    "http": probe_http,
    "tcp": probe_tcp,
    "ping": probe_ping,
    "game-query": probe_game,
}


async def probe(config: Any) -> CheckResult:
    """Run the probe matching ``config.type``. Never raises."""
    check_type = getattr(config, "type", None)
    runner = PROBE_RUNNERS.get(check_type)
    if runner is None:
        return CheckResult(success=False, error=f"unknown type: {check_type}")

    try:
        result = await runner(config)
    except Exception as e:
        logger.exception("Probe %s crashed", check_type)
        result = CheckResult(success=False, error=f"{type(e).__name__}: {e}")

    if result.success:
        logger.debug("%s check ok (%sms)", check_type, result.response_time_ms)
    else:
        logger.debug("%s check failed: %s", check_type, result.error)
    return result
