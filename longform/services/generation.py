"""LiteLLM-backed generation function.

The pipeline only ever sees ``generate(provider_id, instruction) -> str``.
``GenerationClient`` is the production implementation of that callable;
tests substitute a plain function.
"""

import logging
from typing import Callable, Optional

from ..core.config import Settings, settings as default_settings
from ..exceptions import CircuitOpenError, GenerationError
from .circuit_breaker import get_breaker

logger = logging.getLogger(__name__)

GenerateFn = Callable[[str, str], str]


class GenerationClient:
    """One completion call per invocation. No retries: one unit attempt is one call."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    def _completion_kwargs(self, provider_id: str, instruction: str) -> dict:
        kwargs: dict = {
            "model": self.settings.model_for(provider_id),
            "messages": [{"role": "user", "content": instruction}],
            "max_tokens": self.settings.llm_max_tokens,
            "temperature": self.settings.llm_temperature,
            "timeout": self.settings.llm_timeout_seconds,
        }
        if self.settings.llm_api_key:
            kwargs["api_key"] = self.settings.llm_api_key
        if self.settings.llm_api_base:
            kwargs["api_base"] = self.settings.llm_api_base
        return kwargs

    def __call__(self, provider_id: str, instruction: str) -> str:
        import litellm

        kwargs = self._completion_kwargs(provider_id, instruction)

        def _call():
            response = litellm.completion(**kwargs)
            return response.choices[0].message.content

        try:
            breaker = get_breaker(
                provider_id,
                failure_threshold=self.settings.breaker_failure_threshold,
                cooldown_seconds=self.settings.breaker_cooldown_seconds,
            )
            content = breaker.call(_call, timeout=self.settings.llm_timeout_seconds)
        except CircuitOpenError:
            raise
        except Exception as e:
            logger.error(
                "Generation call failed for %s: %s", provider_id, e,
                extra={"model": kwargs["model"]},
            )
            raise GenerationError(provider_id, str(e)) from e

        return content or ""
