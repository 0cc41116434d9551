"""
Provider-agnostic LLM client for Dossier.

Narrative and answer synthesis only ever need "prompt in, text out", so
each provider contributes a connect step and a generate step. The async
path runs the provider SDK in a worker thread under a hard timeout; a
generation that overruns is abandoned, not awaited.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Dict, Optional

from .config import LLMConfig

logger = logging.getLogger("dossier.common.llm_client")

SUPPORTED_PROVIDERS = ("anthropic", "openai", "google")


class LLMClient:
    """Unified text generation client across LLM providers."""

    def __init__(self, provider: str = "anthropic", model: str = "", api_key: Optional[str] = None) -> None:
        self.provider = (provider or "anthropic").lower()
        self.model = model
        self._client: Any = None
        self._google_models: Dict[str, Any] = {}

        if self.provider not in SUPPORTED_PROVIDERS:
            logger.warning("Unsupported LLM provider: %s", self.provider)
            return
        if not api_key:
            logger.info("%s API key not provided, LLM client unavailable", self.provider)
            return

        try:
            self._client = getattr(self, f"_connect_{self.provider}")(api_key)
        except ImportError as e:
            logger.warning("%s SDK not installed: %s", self.provider, e)
        except Exception as e:
            logger.warning("Failed to initialize %s client: %s", self.provider, e)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    # ---------- provider setup ---------- #

    @staticmethod
    def _connect_anthropic(api_key: str) -> Any:
        import anthropic

        return anthropic.Anthropic(api_key=api_key)

    @staticmethod
    def _connect_openai(api_key: str) -> Any:
        from openai import OpenAI

        return OpenAI(api_key=api_key)

    @staticmethod
    def _connect_google(api_key: str) -> Any:
        import google.generativeai as genai

        genai.configure(api_key=api_key)
        return genai  # module; models are built per system prompt

    # ---------- generation ---------- #

    def generate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> str:
        """Blocking generation. Raises RuntimeError when no provider is connected."""
        if not self.is_available:
            raise RuntimeError("LLM client is not available")
        generate_fn = getattr(self, f"_generate_{self.provider}")
        return generate_fn(prompt, system, max_tokens, timeout).strip()

    def _generate_anthropic(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        extra = {"system": system} if system else {}
        response = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
            timeout=timeout,
            **extra,
        )
        return response.content[0].text

    def _generate_openai(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        response = self._client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            messages=messages,
            timeout=timeout,
        )
        return response.choices[0].message.content or ""

    def _generate_google(self, prompt: str, system: Optional[str], max_tokens: int, timeout: float) -> str:
        key = hashlib.md5((system or "").encode()).hexdigest()
        model = self._google_models.get(key)
        if model is None:
            options = {"model_name": self.model}
            if system:
                options["system_instruction"] = system
            model = self._google_models[key] = self._client.GenerativeModel(**options)
        response = model.generate_content(
            prompt,
            generation_config={"max_output_tokens": max_tokens},
            request_options={"timeout": timeout},
        )
        return response.text

    async def agenerate(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        max_tokens: int = 512,
        timeout: float = 30.0,
    ) -> str:
        """Generate off the event loop; raises asyncio.TimeoutError past ``timeout``."""
        return await asyncio.wait_for(
            asyncio.to_thread(
                self.generate,
                prompt,
                system=system,
                max_tokens=max_tokens,
                timeout=timeout,
            ),
            timeout=timeout,
        )


def create_llm_client(config: LLMConfig) -> LLMClient:
    """Build an LLMClient from the shared llm config section."""
    api_keys = {
        "anthropic": config.anthropic_api_key,
        "openai": config.openai_api_key,
        "google": config.google_api_key,
    }
    return LLMClient(
        provider=config.provider,
        model=config.model,
        api_key=api_keys.get((config.provider or "").lower()) or None,
    )
