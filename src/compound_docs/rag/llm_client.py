"""LiteLLM boundary: one embedding call, token counting, provider key lookup.

Retries and circuit breaking happen in compound_docs.ingest.embedding_gateway,
so every litellm call here is made with its own retry disabled.
"""

from __future__ import annotations

import logging
import os

import litellm

litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4

# ------------------------------------------------------------------
# Embedding providers and the env var holding their key
# ------------------------------------------------------------------

_KEY_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "bedrock": None,  # AWS credential chain
    "ollama": None,
}


def missing_api_key(model: str) -> str | None:
    """Name of the env var *model*'s provider needs but is unset, else None.

    Models without a provider prefix are treated as OpenAI models, the same
    way litellm routes them.
    """
    provider = model.split("/", 1)[0].lower() if "/" in model else "openai"
    env_var = _KEY_ENV.get(provider)
    if env_var and not os.getenv(env_var):
        return env_var
    return None


def embed(model: str, text: str, timeout: float = 60.0) -> list[float]:
    """Embed *text* with a single provider call and return the vector.

    Provider exceptions propagate unchanged; the gateway classifies them.
    """
    response = litellm.embedding(model=model, input=[text], timeout=timeout, num_retries=0)
    return list(response.data[0]["embedding"])


def count_tokens(model: str, text: str) -> int:
    """Token count of *text* for *model*; ``len(text) / 4`` when litellm can't tell."""
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception as exc:  # litellm raises assorted provider errors here
        logger.debug("token_counter failed for %s (%s); estimating", model, exc)
        return max(1, len(text) // _CHARS_PER_TOKEN)
