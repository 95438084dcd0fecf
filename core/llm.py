"""
LLM client.

Talks to the configured chat provider over the transport layer: chat
completions with retry (streamed or not) and the embedding calls used by
provider-backed ingestion and query embedding.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, NamedTuple, Optional, Sequence

import httpx

from config import Settings, settings
from core import providers
from core.providers import MessageLike
from monitoring.metrics import PerformanceTracker
from transport.http import RetryPolicy, request_with_retry
from transport.streaming import stream_with_retry_async

logger = logging.getLogger(__name__)


class ChatReply(NamedTuple):
    """
    Outcome of a chat call.

    Attributes:
        text: Assistant text (empty unless status is 200).
        status: HTTP status or transport sentinel.
        raw: Raw response body, or the streamed text.
    """

    text: str
    status: int
    raw: str


class LLMClient:
    """
    Provider-agnostic chat and embedding client.

    Attributes:
        cfg: Settings selecting provider, endpoint, models and knobs.
        client: Optional shared httpx client (one per request otherwise).
        policy: Retry policy for every call.
    """

    def __init__(
        self,
        cfg: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.cfg = cfg or settings
        self.client = client
        self.policy = policy or RetryPolicy.from_settings(self.cfg)

    @property
    def provider(self) -> str:
        return self.cfg.PROVIDER

    def supports_batch_embeddings(self) -> bool:
        return providers.supports_batch_embeddings(self.provider)

    def _transport_kwargs(self) -> dict:
        return {
            "policy": self.policy,
            "timeout_ms": self.cfg.TIMEOUT_MS,
            "poll_interval_ms": self.cfg.POLL_INTERVAL_MS,
            "client": self.client,
        }

    async def chat(self, messages: Sequence[MessageLike]) -> ChatReply:
        """
        Non-streamed chat completion.

        Args:
            messages: Conversation; the context-only instruction is added.

        Returns:
            ChatReply with the extracted assistant text on success.
        """
        payload = providers.build_chat_payload(self.cfg, messages, stream=False)
        logger.info(f"Chat request to {self.provider} ({providers.resolve_chat_model(self.cfg)})")

        with PerformanceTracker("chat"):
            response = await request_with_retry(
                "POST",
                providers.chat_url(self.cfg),
                providers.build_headers(self.cfg),
                payload,
                provider=self.provider,
                **self._transport_kwargs(),
            )

        if response.status != 200:
            logger.error(f"Chat failed with status {response.status}: {response.text[:500]}")
            return ChatReply("", response.status, response.text)

        return ChatReply(
            providers.extract_chat_text(self.provider, response.text),
            response.status,
            response.text,
        )

    async def chat_stream(
        self,
        messages: Sequence[MessageLike],
        on_delta: Optional[Callable[[str], Any]] = None,
        on_retry: Optional[Callable[[int], Any]] = None,
    ) -> ChatReply:
        """
        Streamed chat completion.

        `on_delta` receives each new text fragment. A retried attempt streams
        from the beginning, after `on_retry(attempt)` fires.

        Returns:
            ChatReply whose text and raw value are the final attempt's text.
        """
        payload = providers.build_chat_payload(self.cfg, messages, stream=True)
        logger.info(f"Streaming chat request to {self.provider} ({providers.resolve_chat_model(self.cfg)})")

        with PerformanceTracker("chat_stream") as tracker:

            def forward(fragment: str) -> None:
                tracker.record_first_token()
                if on_delta is not None:
                    on_delta(fragment)

            kwargs = self._transport_kwargs()
            result = await stream_with_retry_async(
                self.provider,
                "POST",
                providers.stream_chat_url(self.cfg),
                providers.build_headers(self.cfg),
                payload,
                forward,
                policy=kwargs.pop("policy"),
                on_retry=on_retry,
                stall_ms=self.cfg.STREAM_STALL_MS,
                **kwargs,
            )

        if result.status != 200:
            logger.error(f"Chat stream ended with status {result.status}")
        return ChatReply(result.text, result.status, result.text)

    async def embed(self, text: str) -> List[float]:
        """
        Provider embedding of one text.

        Returns:
            The vector, or [] when the call fails or the response is malformed.
        """
        response = await request_with_retry(
            "POST",
            providers.embed_url(self.cfg),
            providers.build_headers(self.cfg),
            providers.build_embedding_payload(self.cfg, text),
            provider=self.provider,
            **self._transport_kwargs(),
        )
        if response.status != 200:
            logger.warning(f"Embedding request failed with status {response.status}")
            return []
        return providers.parse_embedding_vector(self.provider, response.text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Provider embeddings of several texts.

        Texts are sent in slices of at most `EMBED_BATCH_SIZE` per request,
        sequentially, and the vectors are returned in input order.

        Returns:
            One vector per text. Every text of a slice whose request fails or
            returns the wrong number of vectors gets [].

        Raises:
            ValueError: If the provider has no batch endpoint.
        """
        size = self.cfg.EMBED_BATCH_SIZE
        vectors: List[List[float]] = []

        for start in range(0, len(texts), size):
            batch = texts[start:start + size]
            response = await request_with_retry(
                "POST",
                providers.batch_embed_url(self.cfg),
                providers.build_headers(self.cfg),
                providers.build_batch_embedding_payload(self.cfg, batch),
                provider=self.provider,
                **self._transport_kwargs(),
            )
            if response.status != 200:
                logger.warning(
                    f"Batch embedding of texts {start}-{start + len(batch) - 1} "
                    f"failed with status {response.status}"
                )
                vectors.extend([] for _ in batch)
                continue

            parsed = providers.parse_embedding_vectors(self.provider, response.text)
            if len(parsed) != len(batch):
                logger.warning(f"Batch embedding returned {len(parsed)} vectors for {len(batch)} texts")
                parsed = [[] for _ in batch]
            vectors.extend(parsed)

        return vectors


def get_llm(cfg: Optional[Settings] = None) -> LLMClient:
    """
    Convenience function to get an LLM client.

    Returns:
        LLMClient for the given settings (global settings by default).
    """
    return LLMClient(cfg)
