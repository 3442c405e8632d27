import logging

from config.settings import settings
from services.llm.base import ImageInput, LLMProvider, LLMResponse
from services.llm.providers.claude import ClaudeProvider
from services.llm.providers.gemini import GeminiProvider
from services.llm.providers.ollama import OllamaProvider

log = logging.getLogger(__name__)


class LLMRouter:
    """Routes vision requests to the configured provider.

    Ollama is always registered (local). Cloud providers are registered only
    when their API key is configured. If the configured vision provider is
    missing, requests fall back to Ollama.
    """

    def __init__(self):
        self._providers: dict[str, LLMProvider] = {}
        self._init_providers()

    def _init_providers(self):
        self._providers["ollama"] = OllamaProvider()
        if settings.claude_api_key:
            self._providers["claude"] = ClaudeProvider()
        if settings.gemini_api_key:
            self._providers["gemini"] = GeminiProvider()

    def get_provider(self, name: str | None = None) -> LLMProvider:
        name = name or settings.vision_provider.value
        if name not in self._providers:
            available = list(self._providers.keys())
            raise ValueError(f"Provider '{name}' not available. Available: {available}")
        return self._providers[name]

    def vision_provider_name(self) -> str:
        target = settings.vision_provider.value
        # Fall back to ollama if the cloud provider isn't configured
        return target if target in self._providers else "ollama"

    async def complete(
        self,
        prompt: str,
        image: ImageInput | None = None,
        system: str = "",
        provider: str | None = None,
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        """Send a (vision) completion request to the specified or configured provider."""
        p = self.get_provider(provider or self.vision_provider_name())
        log.info(
            f"Routing to {p.provider_name} (model={model or 'default'}, image={image is not None})"
        )
        return await p.complete(
            prompt=prompt,
            image=image,
            system=system,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def health(self) -> dict:
        result = {}
        for name, provider in self._providers.items():
            result[name] = await provider.is_available()
        return result


# Singleton instance
llm_router = LLMRouter()
