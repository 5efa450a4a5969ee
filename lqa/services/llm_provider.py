"""LLM Provider abstraction for the AI review tiers.

To add a new LLM backend:
1. Implement a class that subclasses LLMProvider and implements generate().
2. Call register_provider("name", factory) where factory is a callable (config_dict) -> LLMProvider.
3. Add its model names to ``MODEL_CATALOG`` in ``lqa.services.ai_tiers``.

Providers are built per model by ``create_provider`` and cached by the
``TierClient`` that owns them; nothing here holds a live client.
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, Any
import asyncio
import logging

logger = logging.getLogger(__name__)

# Registry: provider name -> factory(config: dict) -> LLMProvider
_PROVIDER_REGISTRY: Dict[str, Callable[[Dict[str, Any]], "LLMProvider"]] = {}


class ContentFilteredError(Exception):
    """The provider refused or blocked the response (safety / content filter)."""


def register_provider(name: str, factory: Callable[[Dict[str, Any]], "LLMProvider"]) -> None:
    """Register an LLM provider. factory(config_dict) must return an LLMProvider instance."""
    name = (name or "").lower().strip()
    if not name:
        raise ValueError("Provider name must be non-empty")
    _PROVIDER_REGISTRY[name] = factory


def list_providers() -> list[str]:
    """Return registered provider names."""
    return sorted(_PROVIDER_REGISTRY.keys())


def create_provider(name: str, config: Dict[str, Any]) -> "LLMProvider":
    """Build a provider instance from the registry. Raises ValueError for unknown names."""
    key = (name or "").lower().strip()
    factory = _PROVIDER_REGISTRY.get(key)
    if factory is None:
        raise ValueError(f"Unknown LLM provider: {name!r}. Registered: {list_providers()}")
    return factory(config)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str

    @abstractmethod
    async def generate(self, prompt: str, **kwargs) -> str:
        """Generate complete LLM response (non-streaming). ``json_mode=True`` requests a JSON object."""
        pass


def _vertex_generate_sync(model_name: str, prompt: str, gen_config: dict) -> str:
    from vertexai.generative_models import GenerativeModel
    model = GenerativeModel(model_name)
    response = model.generate_content(prompt, generation_config=gen_config)
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        raise ContentFilteredError(f"{model_name}: response has no candidates")
    finish = getattr(candidates[0], "finish_reason", None)
    if finish is not None and getattr(finish, "name", str(finish)) in ("SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT"):
        raise ContentFilteredError(f"{model_name}: response blocked ({getattr(finish, 'name', finish)})")
    return response.text or ""


class VertexAIProvider(LLMProvider):
    """Vertex AI (Gemini) provider. Calls run in a thread since the SDK is synchronous."""

    def __init__(self, project_id: str, location: str = "us-central1", model: str = "gemini-2.0-flash",
                 temperature: float = 0.1):
        self.project_id = project_id
        self.location = location
        self.model = model
        self.temperature = temperature
        import vertexai
        vertexai.init(project=project_id, location=location)

    def _generation_config(self, **kwargs) -> dict:
        config = {"temperature": kwargs.get("temperature", self.temperature)}
        if kwargs.get("json_mode"):
            config["response_mime_type"] = "application/json"
        return config

    async def generate(self, prompt: str, **kwargs) -> str:
        return await asyncio.to_thread(
            _vertex_generate_sync, self.model, prompt, self._generation_config(**kwargs)
        )


def _vertex_factory(config: Dict[str, Any]) -> "LLMProvider":
    vertex = config.get("vertex") or {}
    project_id = vertex.get("project_id")
    if not project_id:
        raise ValueError("Vertex provider requires vertex.project_id (VERTEX_PROJECT_ID)")
    return VertexAIProvider(
        project_id=project_id,
        location=vertex.get("location") or "us-central1",
        model=config["model"],
        temperature=float((config.get("options") or {}).get("temperature", 0.1)),
    )


def _openai_factory(config: Dict[str, Any]) -> "LLMProvider":
    from lqa.services.llm_provider_openai import OpenAIProvider
    openai_cfg = config.get("openai") or {}
    api_key = openai_cfg.get("api_key")
    if not api_key:
        raise ValueError("OpenAI provider requires openai.api_key (OPENAI_API_KEY)")
    return OpenAIProvider(
        api_key=api_key,
        model=config["model"],
        base_url=openai_cfg.get("base_url"),
        temperature=float((config.get("options") or {}).get("temperature", 0.1)),
    )


register_provider("vertex", _vertex_factory)
register_provider("openai", _openai_factory)
