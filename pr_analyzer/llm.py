"""Text-generation backends — the narrow invoke interface, registry, and Bedrock client."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.config import Config as BotoConfig

from pr_analyzer.config import (
    BACKEND_TIMEOUT_SECONDS,
    BEDROCK_MODEL_ID,
    BEDROCK_PROFILE,
    BEDROCK_REGION,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    USAGE_LOG_PATH,
)
from pr_analyzer.errors import BackendError, ConfigurationError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert software engineer reviewing a pull request. "
    "Be specific, reference files and lines, and follow the requested "
    "output format exactly."
)


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class BackendResponse:
    """Text returned by a backend plus token usage when the provider reports it."""

    text: str
    usage: Optional[TokenUsage] = None
    stop_reason: str = "unknown"


class Backend(Protocol):
    """Stateless prompt -> response call."""

    provider: str
    model: str

    def invoke(self, prompt: str, tool: str = "unknown") -> BackendResponse: ...


# ── Usage log ────────────────────────────────────────────────────────────────


def _get_usage_logger(log_path: str = USAGE_LOG_PATH) -> logging.Logger:
    """Dedicated TSV file logger for token usage, configured on first use."""
    usage_logger = logging.getLogger("pr_analyzer.usage")
    if usage_logger.handlers:
        return usage_logger

    usage_logger.setLevel(logging.INFO)
    usage_logger.propagate = False  # Don't duplicate to root logger

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Check before the handler creates the file
    needs_header = not path.exists() or path.stat().st_size == 0

    handler = logging.FileHandler(str(path), mode="a")
    handler.setFormatter(logging.Formatter("%(message)s"))
    usage_logger.addHandler(handler)

    if needs_header:
        usage_logger.info(
            "timestamp\tmodel\ttool\tinput_tokens\toutput_tokens\ttotal_tokens\tlatency_ms"
        )
    return usage_logger


def log_usage(model: str, tool: str, usage: TokenUsage, latency_ms: int) -> None:
    """Log token usage to both the usage log file and the standard logger."""
    logger.info(
        "Backend usage [%s]: input=%d output=%d total=%d latency=%dms model=%s",
        tool,
        usage.input_tokens,
        usage.output_tokens,
        usage.total,
        latency_ms,
        model,
    )
    try:
        usage_log = _get_usage_logger()
    except OSError as e:
        logger.warning("Usage log unavailable: %s", e)
        return
    usage_log.info(
        "%s\t%s\t%s\t%d\t%d\t%d\t%d",
        datetime.now(timezone.utc).isoformat(),
        model,
        tool,
        usage.input_tokens,
        usage.output_tokens,
        usage.total,
        latency_ms,
    )


# ── Registry ─────────────────────────────────────────────────────────────────

BackendFactory = Callable[..., Backend]


class BackendRegistry:
    """Maps provider names to backend factories and caches one client per
    (name, options) pair.

    Created by the caller and passed into the workflow; nothing is cached at
    module level.
    """

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}
        self._instances: dict[tuple, Backend] = {}

    def register(self, name: str, factory: BackendFactory) -> None:
        key = name.lower()
        self._factories[key] = factory
        for cached in [k for k in self._instances if k[0] == key]:
            del self._instances[cached]

    def names(self) -> list[str]:
        return sorted(self._factories)

    def get(self, name: str, **options) -> Backend:
        """Return the backend for `name` built with `options`, creating it once."""
        key = name.lower()
        cache_key = (key, tuple(sorted(options.items())))
        if cache_key in self._instances:
            return self._instances[cache_key]
        factory = self._factories.get(key)
        if factory is None:
            raise ConfigurationError(
                f"Backend '{name}' is not registered. "
                f"Available backends: {', '.join(self.names()) or 'none'}",
                "provider",
            )
        backend = factory(**options)
        self._instances[cache_key] = backend
        logger.info("Backend created: provider=%s model=%s", key, backend.model)
        return backend


# ── Bedrock backend ──────────────────────────────────────────────────────────


class BedrockBackend:
    """Anthropic models on AWS Bedrock, streamed through bedrock-runtime."""

    provider = "bedrock"

    def __init__(
        self,
        model: str = BEDROCK_MODEL_ID,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        profile: Optional[str] = BEDROCK_PROFILE,
        region: str = BEDROCK_REGION,
        client=None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.profile = profile
        self.region = region
        self._client = client

    def _get_client(self):
        """Lazy-init the Bedrock Runtime client using the configured AWS profile."""
        if self._client is None:
            session = boto3.Session(profile_name=self.profile, region_name=self.region)
            self._client = session.client(
                "bedrock-runtime",
                config=BotoConfig(
                    retries={"max_attempts": 2, "mode": "adaptive"},
                    read_timeout=BACKEND_TIMEOUT_SECONDS,
                    connect_timeout=10,
                    max_pool_connections=4,
                    tcp_keepalive=True,
                ),
            )
            logger.info(
                "Bedrock client initialized: profile=%s region=%s model=%s",
                self.profile,
                self.region,
                self.model,
            )
        return self._client

    def invoke(self, prompt: str, tool: str = "unknown") -> BackendResponse:
        """Stream a completion from Bedrock and return the accumulated text.

        Raises:
            BackendError: If the call fails before any text is received, or the
                stream reports an error event.
        """
        body = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }

        start = time.monotonic()
        logger.info("Bedrock stream starting [%s] model=%s", tool, self.model)

        # Declared outside try so partial results are usable in except
        text_chunks: list[str] = []
        input_tokens = 0
        output_tokens = 0

        try:
            response = self._get_client().invoke_model_with_response_stream(
                modelId=self.model,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(body),
            )

            stop_reason = "unknown"
            chunk_count = 0
            total_chars = 0

            for event in response["body"]:
                if "chunk" not in event:
                    for key in (
                        "internalServerException",
                        "modelStreamErrorException",
                        "throttlingException",
                        "validationException",
                    ):
                        if key in event:
                            err_msg = event[key].get("message", str(event[key]))
                            logger.error("Bedrock stream error [%s]: %s: %s", tool, key, err_msg)
                            raise BackendError(
                                f"Bedrock stream error ({key}): {err_msg}", self.provider
                            )
                    logger.warning("Unknown non-chunk event in stream: %s", list(event.keys()))
                    continue

                try:
                    chunk = json.loads(event["chunk"]["bytes"])
                except (json.JSONDecodeError, KeyError) as parse_err:
                    logger.warning("Malformed stream chunk, skipping: %s", parse_err)
                    continue

                chunk_type = chunk.get("type", "")
                if chunk_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    if delta.get("type") == "text_delta":
                        text = delta.get("text", "")
                        text_chunks.append(text)
                        total_chars += len(text)
                        chunk_count += 1
                        if chunk_count % 20 == 0:
                            elapsed = time.monotonic() - start
                            msg = f"streaming {total_chars} chars, {elapsed:.0f}s"
                            logger.info("  [%s] %s", tool, msg)
                elif chunk_type == "message_delta":
                    stop_reason = chunk.get("delta", {}).get("stop_reason", "unknown")
                    output_tokens = chunk.get("usage", {}).get("output_tokens", 0)
                elif chunk_type == "message_start":
                    input_tokens = (
                        chunk.get("message", {}).get("usage", {}).get("input_tokens", 0)
                    )

            full_text = "".join(text_chunks)
            usage = TokenUsage(input_tokens, output_tokens)
            log_usage(self.model, tool, usage, int((time.monotonic() - start) * 1000))

            if stop_reason == "max_tokens":
                logger.warning(
                    "Response truncated (hit max_tokens=%d) for tool=%s",
                    self.max_tokens,
                    tool,
                )
            if not full_text:
                logger.warning("Empty response from Bedrock stream for tool=%s", tool)
            return BackendResponse(text=full_text, usage=usage, stop_reason=stop_reason)

        except BackendError:
            raise
        except Exception as e:
            latency_ms = int((time.monotonic() - start) * 1000)
            partial = "".join(text_chunks)
            if partial:
                logger.error(
                    "Bedrock stream failed after %dms with %d chars received: %s",
                    latency_ms,
                    len(partial),
                    e,
                )
                usage = TokenUsage(input_tokens, output_tokens)
                log_usage(self.model, tool, usage, latency_ms)
                return BackendResponse(text=partial, usage=usage, stop_reason="stream_error")
            logger.error("Bedrock inference failed after %dms: %s", latency_ms, e)
            raise BackendError(f"Bedrock inference failed: {e}", self.provider) from e
