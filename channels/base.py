"""
Channel Adapters — Base infrastructure for the messaging channels.

Provides:
- ChannelError: structured error hierarchy
- CircuitBreaker: consecutive-failure breaker with a single half-open probe
- ChannelMetrics: per-channel counters split by template and free-text sends
- clean_inbound_text: strips control characters from inbound replies
- ChannelAdapter: abstract base wrapping every send with breaker and metrics
- ChannelRegistry: adapter lookup, initialisation, health checks

Adapters never retry a whole send; transport retries happen inside the
HTTP client and channel fallback happens in the gateway.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Callable, Optional

from models.schemas import ChannelType, DeliveryStatusUpdate, InboundReply

logger = structlog.get_logger()

# Longest inbound text kept; a concatenated SMS tops out around here.
MAX_INBOUND_CHARS = 1600


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """A send that did not reach the provider, or that the provider refused."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"{channel or 'channel'} circuit open, send skipped", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Opens after `failure_threshold` consecutive failed sends on one channel.

    While open every send is refused, so the gateway goes straight to the
    fallback channel. After `recovery_timeout` seconds one send is let
    through; its outcome closes or re-opens the breaker.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 monotonic: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._monotonic = monotonic
        self._consecutive = 0
        self._opened_at: Optional[float] = None
        self._trips = 0

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return "closed"
        if self._monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return "open"

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._consecutive += 1
        probing = self.state == "half_open"
        if probing or (self._opened_at is None and self._consecutive >= self.failure_threshold):
            self._opened_at = self._monotonic()
            self._trips += 1
            logger.warning("circuit_opened", consecutive_failures=self._consecutive, probe=probing)

    def record_success(self):
        if self._opened_at is not None:
            logger.info("circuit_closed", after_trips=self._trips)
        self._consecutive = 0
        self._opened_at = None

    def reset(self):
        self.record_success()

    @property
    def stats(self) -> dict[str, Any]:
        return {"state": self.state, "consecutive_failures": self._consecutive, "trips": self._trips}


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Send counters for one channel; templated and free-text sends counted apart."""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.template_sends = 0
        self.text_sends = 0
        self.failures = 0
        self.last_error = ""
        self._latency_total_ms = 0.0

    def record_send(self, templated: bool, latency_ms: float = 0.0):
        if templated:
            self.template_sends += 1
        else:
            self.text_sends += 1
        self._latency_total_ms += latency_ms

    def record_failure(self, error: str = ""):
        self.failures += 1
        if error:
            self.last_error = error

    @property
    def sends(self) -> int:
        return self.template_sends + self.text_sends

    @property
    def failure_rate(self) -> float:
        attempts = self.sends + self.failures
        return self.failures / attempts if attempts else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel.value,
            "template_sends": self.template_sends,
            "text_sends": self.text_sends,
            "failures": self.failures,
            "failure_rate": round(self.failure_rate, 4),
            "avg_latency_ms": round(self._latency_total_ms / self.sends, 1) if self.sends else 0.0,
            "last_error": self.last_error,
        }


def clean_inbound_text(text: str, max_length: int = MAX_INBOUND_CHARS) -> str:
    """Drop control characters (keeping line breaks and tabs) and cap the length."""
    if not text:
        return ""
    kept = "".join(c for c in text if c in "\n\r\t" or ord(c) >= 32)
    return kept[:max_length].strip()


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for the WhatsApp and SMS adapters.

    Subclasses implement _do_send and _do_send_template and return
    {"status": "sent" | "mock_sent" | "failed", "channel_message_id": ..., "error": ...}.
    The public `send` turns any failure into a ChannelError so the gateway
    can fall through to the next channel.
    """

    channel_type: ChannelType

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._metrics = ChannelMetrics(self.channel_type)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, recipient: str, content: str, metadata: dict[str, Any]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def _do_send_template(self, recipient: str, template_id: str,
                                variables: dict[str, str], metadata: dict[str, Any]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def initialize(self, config: dict[str, Any]) -> None:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send(self, recipient: str, content: str = "", template_id: str = "",
                   variables: Optional[dict[str, str]] = None,
                   metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        channel = self.channel_type.value
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(channel)

        started = time.monotonic()
        try:
            if template_id:
                result = await self._do_send_template(recipient, template_id, variables or {}, metadata or {})
            else:
                result = await self._do_send(recipient, content, metadata or {})
            if result.get("status") == "failed":
                raise ChannelError(result.get("error") or "send failed", channel)
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            if isinstance(e, ChannelError):
                raise
            raise ChannelError(str(e), channel, retryable=True) from e

        latency_ms = (time.monotonic() - started) * 1000
        self._breaker.record_success()
        self._metrics.record_send(bool(template_id), latency_ms)
        return {**result, "latency_ms": round(latency_ms, 1)}

    # ── Inbound ───────────────────────────────────────────────

    async def parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[InboundReply]:
        parsed = await self._parse_inbound(raw_payload)
        if parsed is not None:
            parsed.body = clean_inbound_text(parsed.body)
            parsed.button_payload = clean_inbound_text(parsed.button_payload, max_length=128)
        return parsed

    async def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[InboundReply]:
        return None

    def parse_status(self, raw_payload: dict[str, Any]) -> Optional[DeliveryStatusUpdate]:
        return None

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_type.value,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    """The adapters this process sends through, one per channel type."""

    def __init__(self):
        self._adapters: dict[ChannelType, ChannelAdapter] = {}

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel_type] = adapter

    def get(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel_type)

    def get_available(self) -> list[ChannelType]:
        return list(self._adapters)

    async def initialize_all(self, configs: dict[str, Any]):
        for channel_type, adapter in self._adapters.items():
            try:
                await adapter.initialize(configs.get(channel_type.value, {}))
            except Exception as e:
                logger.error("channel_init_failed", channel=channel_type.value, error=str(e))

    async def health_check_all(self) -> dict[str, Any]:
        return {channel_type.value: await adapter.health_check()
                for channel_type, adapter in self._adapters.items()}

    async def shutdown_all(self):
        for channel_type, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=channel_type.value, error=str(e))
