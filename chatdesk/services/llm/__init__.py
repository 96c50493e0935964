from chatdesk.config import Settings
from chatdesk.services.llm.base import LLMError, LLMProvider, LLMResponse, LLMTimeoutError, ToolCall
from chatdesk.services.llm.ollama_provider import OllamaProvider
from chatdesk.services.llm.openai_provider import OpenAIProvider


def build_llm_provider(cfg: Settings) -> LLMProvider:
    provider = (cfg.llm_provider or "ollama").strip().lower()
    if provider == "openai":
        if not cfg.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        return OpenAIProvider(api_key=cfg.openai_api_key, default_model=cfg.ai_model, base_url=cfg.openai_base_url)
    if provider == "ollama":
        return OllamaProvider(base_url=cfg.ollama_url, default_model=cfg.ai_model)
    raise ValueError(f"Unknown LLM provider: {cfg.llm_provider}")


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LLMError",
    "LLMTimeoutError",
    "ToolCall",
    "OpenAIProvider",
    "OllamaProvider",
    "build_llm_provider",
]
