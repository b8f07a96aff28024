"""Rate-limited access to the remote backtest oracle with pacing and backoff."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

import requests

from tuner.control import CancellationToken
from tuner.metrics import Metrics

LOGGER = logging.getLogger(__name__)

IDLE = "idle"
THROTTLE_WAIT = "throttle_wait"
CALLING = "calling"
SUCCESS = "success"
RATE_LIMITED = "rate_limited"
ERROR = "error"

DEFAULT_BASE_URL = "https://backtester.alphagardeners.xyz/api/stats"
MISSING_RESET_WINDOW = 60.0


class OracleError(RuntimeError):
    """Non-retryable failure reported by the oracle or its transport."""


class RateLimitExhausted(OracleError):
    pass


class OracleCancelled(OracleError):
    pass


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if str(key).lower() == name:
            return value
    return None


def _int_header(headers: Mapping[str, str], name: str) -> Optional[int]:
    value = _header(headers, name)
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class RateLimitInfo:
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[float] = None

    @classmethod
    def from_headers(cls, headers: Optional[Mapping[str, str]]) -> "RateLimitInfo":
        headers = headers or {}
        reset = _int_header(headers, "x-ratelimit-reset")
        return cls(
            limit=_int_header(headers, "x-ratelimit-limit"),
            remaining=_int_header(headers, "x-ratelimit-remaining"),
            reset=float(reset) if reset is not None else None,
        )


@dataclass
class OracleResponse:
    status: int
    payload: Optional[Mapping[str, object]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300 and self.error is None

    @property
    def rate_limited(self) -> bool:
        return self.status == 429


Transport = Callable[[Mapping[str, Mapping[str, object]]], OracleResponse]


class RateLimitedOracle:
    """Serialises oracle calls, honours quota headers and retries hard rate limits."""

    def __init__(
        self,
        transport: Transport,
        *,
        delay_between_requests: float = 0.5,
        low_remaining_threshold: int = 5,
        proactive_window: float = 300.0,
        reset_margin: float = 5.0,
        fixed_backoff: float = 300.0,
        max_rate_limit_retries: int = 5,
        token: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.time,
        wait: Optional[Callable[[float], bool]] = None,
    ) -> None:
        self.transport = transport
        self.delay_between_requests = float(delay_between_requests)
        self.low_remaining_threshold = int(low_remaining_threshold)
        self.proactive_window = float(proactive_window)
        self.reset_margin = float(reset_margin)
        self.fixed_backoff = float(fixed_backoff)
        self.max_rate_limit_retries = int(max_rate_limit_retries)
        self.token = token or CancellationToken()
        self._clock = clock
        self._wait = wait or self.token.wait
        self._last_completed: Optional[float] = None
        self.state = IDLE
        self.call_count = 0
        self.rate_limit_hits = 0
        self.proactive_backoffs = 0
        self.last_rate_limit = RateLimitInfo()

    @classmethod
    def from_settings(
        cls,
        transport: Transport,
        cfg: Optional[Mapping[str, object]] = None,
        token: Optional[CancellationToken] = None,
    ) -> "RateLimitedOracle":
        cfg = cfg or {}
        return cls(
            transport,
            delay_between_requests=float(cfg.get("delay_between_requests", 0.5)),
            low_remaining_threshold=int(cfg.get("low_remaining_threshold", 5)),
            proactive_window=float(cfg.get("proactive_window", 300.0)),
            reset_margin=float(cfg.get("reset_margin", 5.0)),
            fixed_backoff=float(cfg.get("fixed_backoff", 300.0)),
            max_rate_limit_retries=int(cfg.get("max_rate_limit_retries", 5)),
            token=token,
        )

    def _sleep(self, seconds: float, reason: str) -> None:
        if self.token.cancelled:
            raise OracleCancelled("Optimisation cancelled")
        if seconds <= 0:
            return
        LOGGER.debug("Waiting %.2fs (%s)", seconds, reason)
        if self._wait(seconds) or self.token.cancelled:
            raise OracleCancelled(f"Cancelled during {reason}")

    def _throttle(self) -> None:
        self.state = THROTTLE_WAIT
        if self._last_completed is None:
            self._sleep(0.0, "pacing")
            return
        elapsed = self._clock() - self._last_completed
        self._sleep(self.delay_between_requests - elapsed, "pacing")

    def _backoff_seconds(self, info: RateLimitInfo) -> float:
        now = self._clock()
        reset = info.reset if info.reset is not None else now + MISSING_RESET_WINDOW
        return max(reset - now + self.reset_margin, self.fixed_backoff)

    def _maybe_backoff_proactively(self, info: RateLimitInfo) -> None:
        if info.remaining is None or info.reset is None:
            return
        if info.remaining > self.low_remaining_threshold:
            return
        until_reset = info.reset - self._clock()
        if 0 <= until_reset <= self.proactive_window:
            self.proactive_backoffs += 1
            LOGGER.warning(
                "Only %d oracle calls remaining; pausing %.0fs until quota resets",
                info.remaining,
                until_reset + self.reset_margin,
            )
            self._sleep(until_reset + self.reset_margin, "proactive backoff")

    def evaluate(self, config: Mapping[str, Mapping[str, object]]) -> Metrics:
        """Return validated metrics for ``config`` or raise :class:`OracleError`."""

        retries = 0
        while True:
            self._throttle()
            self.state = CALLING
            try:
                response = self.transport(config)
            finally:
                self._last_completed = self._clock()
                self.call_count += 1

            info = RateLimitInfo.from_headers(response.headers)
            self.last_rate_limit = info

            if response.rate_limited:
                self.state = RATE_LIMITED
                self.rate_limit_hits += 1
                if retries >= self.max_rate_limit_retries:
                    raise RateLimitExhausted(f"Rate limited {retries + 1} times in a row; giving up")
                retries += 1
                backoff = self._backoff_seconds(info)
                LOGGER.warning(
                    "Oracle rate limited (hit %d, retry %d/%d); backing off %.0fs",
                    self.rate_limit_hits,
                    retries,
                    self.max_rate_limit_retries,
                    backoff,
                )
                self._sleep(backoff, "rate-limit backoff")
                continue

            if not response.ok:
                self.state = ERROR
                message = response.error or f"HTTP {response.status}"
                raise OracleError(f"Oracle request failed: {message}")

            try:
                metrics = Metrics.from_payload(response.payload or {})
            except ValueError as exc:
                self.state = ERROR
                raise OracleError(f"Invalid oracle payload: {exc}") from exc

            self.state = SUCCESS
            self._maybe_backoff_proactively(info)
            return metrics


def _encode_value(value: object) -> object:
    if value == "Yes":
        return "true"
    if value == "No":
        return "false"
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class HttpTransport:
    """Send a configuration to an HTTP backtest endpoint as query parameters."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        parameter_map: Optional[Mapping[str, str]] = None,
        static_params: Optional[Mapping[str, object]] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url
        self.parameter_map = dict(parameter_map or {})
        self.static_params = dict(static_params or {})
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, cfg: Optional[Mapping[str, object]] = None) -> "HttpTransport":
        cfg = cfg or {}
        return cls(
            str(cfg.get("base_url") or DEFAULT_BASE_URL),
            parameter_map=cfg.get("parameter_map") or {},
            static_params=cfg.get("static_params") or {},
            timeout=float(cfg.get("timeout", 30.0)),
        )

    def build_params(self, config: Mapping[str, Mapping[str, object]]) -> Dict[str, object]:
        params: Dict[str, object] = dict(self.static_params)
        for section in config.values():
            for name, value in (section or {}).items():
                if value is None:
                    continue
                params[self.parameter_map.get(name, name)] = _encode_value(value)
        return params

    def __call__(self, config: Mapping[str, Mapping[str, object]]) -> OracleResponse:
        params = self.build_params(config)
        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            LOGGER.warning("Backtest request failed: %s", exc)
            return OracleResponse(status=0, error=str(exc))

        headers = dict(response.headers)
        if response.status_code == 429 or not response.ok:
            return OracleResponse(
                status=response.status_code,
                headers=headers,
                error=None if response.status_code == 429 else response.text[:200],
            )
        try:
            payload = response.json()
        except ValueError as exc:
            return OracleResponse(status=response.status_code, headers=headers, error=f"Invalid JSON: {exc}")
        if isinstance(payload, Mapping) and payload.get("success") is False:
            return OracleResponse(
                status=response.status_code,
                headers=headers,
                error=str(payload.get("error") or "Backtest reported failure"),
            )
        return OracleResponse(status=response.status_code, payload=payload, headers=headers)


__all__ = [
    "HttpTransport",
    "OracleCancelled",
    "OracleError",
    "OracleResponse",
    "RateLimitExhausted",
    "RateLimitInfo",
    "RateLimitedOracle",
]
