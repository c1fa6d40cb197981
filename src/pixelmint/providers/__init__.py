"""
Image provider adapters for PixelMint.
"""

from typing import List, Optional

from loguru import logger

from ..core.config import Settings, load_api_key, validate_api_key_format
from .gemini_adapter import GeminiProvider
from .local_adapter import LocalProvider
from .openai_adapter import OpenAIImageProvider
from .stability_adapter import StableDiffusionProvider

REMOTE_PROVIDERS = {
    "gemini": (GeminiProvider, "Google Gemini", "AIza"),
    "openai": (OpenAIImageProvider, "OpenAI", "sk-"),
    "stable_diffusion": (StableDiffusionProvider, "Stability AI", "sk-"),
}


def create_default_providers(settings: Settings, include_local: bool = True) -> List[object]:
    """
    Build providers for every remote service with a usable API key in the keyring.

    Providers without a key, or with a malformed one, are skipped with a log
    message; the local provider is always appended unless disabled.
    """
    providers: List[object] = []
    for name, (factory, display_name, key_prefix) in REMOTE_PROVIDERS.items():
        api_key: Optional[str] = load_api_key(name)
        if not api_key:
            logger.warning(f"{display_name} API key not configured. {display_name} generation will be disabled.")
            continue
        if not validate_api_key_format(api_key, name):
            logger.error(f"Invalid {display_name} API key format.")
            logger.info(f"Please check your {display_name} API key format (should start with '{key_prefix}')")
            continue
        providers.append(factory(api_key=api_key, timeout=settings.api_timeout))
        logger.info(f"{display_name} provider initialized")

    if include_local:
        providers.append(LocalProvider())
    return providers


__all__ = [
    "GeminiProvider",
    "LocalProvider",
    "OpenAIImageProvider",
    "StableDiffusionProvider",
    "create_default_providers",
]
