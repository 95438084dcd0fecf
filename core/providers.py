"""
Provider adapters.

Shapes requests for and reads responses from the supported chat backends:

- openai / openai-compatible: `/v1/chat/completions`, `/v1/embeddings`
- gemini: `/v1beta/models/{model}:generateContent` (and stream, embed,
  batch embed variants), API key in the query string
- ollama: `/api/chat`, `/api/embeddings`, no batch embeddings

Every chat payload carries one fixed instruction telling the model to
answer only from the supplied context. Response readers never raise: chat
text falls back to the raw body and vectors to an empty list.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import quote

from config import Settings
from core.schema import Message

logger = logging.getLogger(__name__)

CONTEXT_ONLY_INSTRUCTION = (
    "You are a retrieval assistant. Answer strictly and only from the context "
    "supplied in the user's message. If the context does not contain the "
    "answer, say that you don't know. Do not use outside knowledge."
)

DEFAULT_BASE_URLS: Dict[str, str] = {
    "openai": "https://api.openai.com",
    "openai-compatible": "http://localhost:8000",
    "gemini": "https://generativelanguage.googleapis.com",
    "ollama": "http://localhost:11434",
}

DEFAULT_CHAT_MODELS: Dict[str, str] = {
    "openai": "gpt-4o-mini",
    "openai-compatible": "default",
    "gemini": "gemini-1.5-flash",
    "ollama": "llama3",
}

DEFAULT_EMBED_MODELS: Dict[str, str] = {
    "openai": "text-embedding-3-small",
    "openai-compatible": "default",
    "gemini": "text-embedding-004",
    "ollama": "nomic-embed-text",
}

MessageLike = Union[Message, Mapping[str, Any]]


# =============================================================================
# Endpoint resolution
# =============================================================================

def is_openai_like(provider: str) -> bool:
    return provider in ("openai", "openai-compatible")


def resolve_base_url(cfg: Settings) -> str:
    """Configured endpoint or the provider default, without trailing slash."""
    base = cfg.BASE_URL.strip() or DEFAULT_BASE_URLS.get(cfg.PROVIDER, DEFAULT_BASE_URLS["openai"])
    return base.rstrip("/")


def resolve_chat_model(cfg: Settings) -> str:
    return cfg.CHAT_MODEL.strip() or DEFAULT_CHAT_MODELS.get(cfg.PROVIDER, "")


def resolve_embed_model(cfg: Settings) -> str:
    return cfg.EMBED_MODEL.strip() or DEFAULT_EMBED_MODELS.get(cfg.PROVIDER, "")


def _gemini_model(model: str) -> str:
    return model[len("models/"):] if model.startswith("models/") else model


def _openai_url(cfg: Settings, endpoint: str) -> str:
    base = resolve_base_url(cfg)
    if base.endswith("/v1"):
        return f"{base}/{endpoint}"
    return f"{base}/v1/{endpoint}"


def _gemini_url(cfg: Settings, model: str, method: str, params: str = "") -> str:
    query = f"{params}&" if params else ""
    return (
        f"{resolve_base_url(cfg)}/v1beta/models/{_gemini_model(model)}:{method}"
        f"?{query}key={quote(cfg.API_KEY, safe='')}"
    )


def chat_url(cfg: Settings) -> str:
    """Non-streaming chat endpoint."""
    if cfg.PROVIDER == "gemini":
        return _gemini_url(cfg, resolve_chat_model(cfg), "generateContent")
    if cfg.PROVIDER == "ollama":
        return f"{resolve_base_url(cfg)}/api/chat"
    return _openai_url(cfg, "chat/completions")


def stream_chat_url(cfg: Settings) -> str:
    """Streaming chat endpoint (SSE for Gemini and OpenAI, NDJSON for Ollama)."""
    if cfg.PROVIDER == "gemini":
        return _gemini_url(cfg, resolve_chat_model(cfg), "streamGenerateContent", "alt=sse")
    return chat_url(cfg)


def embed_url(cfg: Settings) -> str:
    """Single-text embedding endpoint."""
    if cfg.PROVIDER == "gemini":
        return _gemini_url(cfg, resolve_embed_model(cfg), "embedContent")
    if cfg.PROVIDER == "ollama":
        return f"{resolve_base_url(cfg)}/api/embeddings"
    return _openai_url(cfg, "embeddings")


def batch_embed_url(cfg: Settings) -> str:
    """
    Batch embedding endpoint.

    Raises:
        ValueError: For providers without a batch endpoint (ollama).
    """
    if cfg.PROVIDER == "gemini":
        return _gemini_url(cfg, resolve_embed_model(cfg), "batchEmbedContents")
    if cfg.PROVIDER == "ollama":
        raise ValueError("ollama has no batch embedding endpoint")
    return _openai_url(cfg, "embeddings")


def supports_batch_embeddings(provider: str) -> bool:
    return provider != "ollama"


def build_headers(cfg: Settings) -> Dict[str, str]:
    """
    Request headers for the configured provider.

    Gemini gets only a content type (its key travels in the URL); the others
    also get a bearer token when a key is configured.
    """
    headers = {"Content-Type": "application/json"}
    if cfg.PROVIDER != "gemini" and cfg.API_KEY:
        headers["Authorization"] = f"Bearer {cfg.API_KEY}"
    return headers


# =============================================================================
# Chat payloads
# =============================================================================

def _normalise_messages(messages: Sequence[MessageLike]) -> Tuple[List[str], List[Tuple[str, str]]]:
    """Split caller messages into extra system text and the conversation."""
    system_texts: List[str] = []
    turns: List[Tuple[str, str]] = []

    for message in messages:
        if isinstance(message, Message):
            role, content = message.role, message.content
        else:
            role, content = str(message.get("role", "user")), str(message.get("content", ""))

        if role == "system":
            if content:
                system_texts.append(content)
        else:
            turns.append((role, content))

    return system_texts, turns


def _drop_empty(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None and v != []}


def build_chat_payload(
    cfg: Settings,
    messages: Sequence[MessageLike],
    stream: bool = False,
) -> Dict[str, Any]:
    """
    Build the chat request body.

    The context-only instruction becomes the leading system message
    (OpenAI, Ollama) or the `systemInstruction` (Gemini). System messages
    supplied by the caller are appended to that instruction. Generation
    knobs are mapped to each provider's names and omitted when unset.

    Args:
        cfg: Settings with provider and generation parameters.
        messages: Conversation as Message models or role/content mappings.
        stream: Request a streamed response.

    Returns:
        JSON-serialisable request body.
    """
    system_texts, turns = _normalise_messages(messages)
    instruction = "\n\n".join([CONTEXT_ONLY_INSTRUCTION] + system_texts)
    stop = cfg.get_stop_sequences()

    if cfg.PROVIDER == "gemini":
        payload: Dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": instruction}]},
            "contents": [
                {"role": "model" if role == "assistant" else "user", "parts": [{"text": content}]}
                for role, content in turns
            ],
        }
        generation = _drop_empty({
            "temperature": cfg.TEMPERATURE,
            "topP": cfg.TOP_P,
            "topK": cfg.TOP_K,
            "candidateCount": cfg.CANDIDATE_COUNT,
            "maxOutputTokens": cfg.MAX_OUTPUT_TOKENS,
            "stopSequences": stop,
        })
        if generation:
            payload["generationConfig"] = generation
        safety = cfg.get_safety_thresholds()
        if safety:
            payload["safetySettings"] = [
                {"category": category, "threshold": threshold}
                for category, threshold in safety.items()
            ]
        return payload

    chat_messages = [{"role": "system", "content": instruction}] + [
        {"role": role, "content": content} for role, content in turns
    ]

    if cfg.PROVIDER == "ollama":
        payload = {
            "model": resolve_chat_model(cfg),
            "messages": chat_messages,
            "stream": stream,
        }
        options = _drop_empty({
            "temperature": cfg.TEMPERATURE,
            "top_p": cfg.TOP_P,
            "top_k": cfg.TOP_K,
            "num_predict": cfg.MAX_OUTPUT_TOKENS,
            "stop": stop,
        })
        if options:
            payload["options"] = options
        return payload

    payload = {
        "model": resolve_chat_model(cfg),
        "messages": chat_messages,
        "stream": stream,
    }
    payload.update(_drop_empty({
        "temperature": cfg.TEMPERATURE,
        "top_p": cfg.TOP_P,
        "n": cfg.CANDIDATE_COUNT,
        "max_tokens": cfg.MAX_OUTPUT_TOKENS,
        "stop": stop,
    }))
    return payload


# =============================================================================
# Embedding payloads
# =============================================================================

def _gemini_embed_request(cfg: Settings, text: str) -> Dict[str, Any]:
    request = {
        "model": f"models/{_gemini_model(resolve_embed_model(cfg))}",
        "content": {"parts": [{"text": text}]},
    }
    request.update(_drop_empty({
        "taskType": cfg.TASK_TYPE,
        "outputDimensionality": cfg.OUTPUT_DIMENSIONALITY,
    }))
    return request


def build_embedding_payload(cfg: Settings, text: str) -> Dict[str, Any]:
    """Single-text embedding request body."""
    if cfg.PROVIDER == "gemini":
        return _gemini_embed_request(cfg, text)
    if cfg.PROVIDER == "ollama":
        return {"model": resolve_embed_model(cfg), "prompt": text}
    return {"model": resolve_embed_model(cfg), "input": text}


def build_batch_embedding_payload(cfg: Settings, texts: Sequence[str]) -> Dict[str, Any]:
    """
    Batch embedding request body.

    Gemini sends one sub-request per text; OpenAI-compatible backends take
    an array `input`.

    Raises:
        ValueError: For providers without batch embeddings (ollama).
    """
    if cfg.PROVIDER == "gemini":
        return {"requests": [_gemini_embed_request(cfg, t) for t in texts]}
    if cfg.PROVIDER == "ollama":
        raise ValueError("ollama has no batch embedding endpoint")
    return {"model": resolve_embed_model(cfg), "input": list(texts)}


# =============================================================================
# Response readers
# =============================================================================

def _loads(raw: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def extract_chat_text(provider: str, raw: str) -> str:
    """
    Assistant text of a non-streamed chat response.

    Returns the raw body unchanged when it is not JSON or lacks the
    expected fields, so provider error messages stay visible.
    """
    data = _loads(raw)
    if not isinstance(data, dict):
        return raw

    try:
        if provider == "gemini":
            parts = data["candidates"][0]["content"]["parts"]
            texts = [p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)]
            return "".join(texts) if texts else raw
        if provider == "ollama":
            if isinstance(data.get("response"), str):
                return data["response"]
            content = data["message"]["content"]
        else:
            content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        logger.debug(f"Unexpected {provider} chat response shape")
        return raw

    return content if isinstance(content, str) else raw


def _as_vector(value: Any) -> List[float]:
    if not isinstance(value, list) or not value:
        return []
    if not all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in value):
        return []
    return [float(x) for x in value]


def parse_embedding_vector(provider: str, raw: str) -> List[float]:
    """Vector of a single embedding response, or [] if missing or malformed."""
    data = _loads(raw)
    if not isinstance(data, dict):
        return []

    try:
        if provider == "gemini":
            return _as_vector(data["embedding"]["values"])
        if provider == "ollama":
            if "embedding" in data:
                return _as_vector(data["embedding"])
            return _as_vector(data["embeddings"][0])
        return _as_vector(data["data"][0]["embedding"])
    except (KeyError, IndexError, TypeError):
        return []


def parse_embedding_vectors(provider: str, raw: str) -> List[List[float]]:
    """
    Vectors of a batch embedding response, in input order.

    Returns [] when the response is malformed; an individual malformed entry
    becomes an empty vector so positions stay aligned with the inputs.
    """
    data = _loads(raw)
    if not isinstance(data, dict):
        return []

    try:
        if provider == "gemini":
            return [
                _as_vector(e.get("values")) if isinstance(e, dict) else []
                for e in data["embeddings"]
            ]
        if provider == "ollama":
            return [_as_vector(v) for v in data["embeddings"]]

        entries = [e for e in data["data"] if isinstance(e, dict)]
        entries.sort(key=lambda e: e.get("index", 0))
        return [_as_vector(e.get("embedding")) for e in entries]
    except (KeyError, TypeError, AttributeError):
        return []
