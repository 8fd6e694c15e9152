"""
LLM-based translation backend (OpenAI chat completions).

The translator sends record-framed chunks (see records.py) and returns the
raw reply; chunking, repair and fallback are handled by RecordTranslator.

Provider failures are normalised to ExternalServiceError:
- timeouts           reason 'translator_timeout', no status
- HTTP error replies reason 'translator_error', status = HTTP status
- connection errors  reason 'translator_unreachable'
"""

from __future__ import annotations

import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from termtrans.config import Settings
from termtrans.errors import ExternalServiceError
from termtrans.keys import require_key
from termtrans.translate.base import RecordTranslator

logger = logging.getLogger(__name__)

REPAIR_NUDGE = "The previous output missed some records. Return all records correctly."


class OpenAITranslator(RecordTranslator):
    """OpenAI GPT-based translator.

    Usage:
        translator = OpenAITranslator(settings=Settings.from_env())
        response = await translator.translate(request)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        api_key: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.api_key = api_key
        self._client = client

    @property
    def name(self) -> str:
        return f"openai-{self.settings.model}"

    @property
    def default_model(self) -> Optional[str]:
        return self.settings.model

    def _get_client(self) -> AsyncOpenAI:
        """Lazy initialization of the OpenAI client."""
        if self._client is None:
            kwargs = {
                "api_key": self.api_key or require_key("openai"),
                "timeout": max(1.0, self.settings.timeout_seconds),
                "max_retries": 0,
            }
            if self.settings.base_url:
                kwargs["base_url"] = self.settings.base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def complete(
        self,
        system: str,
        user: str,
        repair: bool = False,
        model: Optional[str] = None,
    ) -> str:
        client = self._get_client()
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        if repair:
            messages.append({"role": "user", "content": REPAIR_NUDGE})

        model = model or self.settings.model
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=0 if repair else self.settings.temperature,
                max_tokens=self.settings.max_output_tokens,
            )
        except openai.APITimeoutError as e:
            raise ExternalServiceError(
                f"OpenAI request timed out after {self.settings.timeout_seconds}s",
                reason="translator_timeout",
                extra={"model": model},
            ) from e
        except openai.APIStatusError as e:
            raise ExternalServiceError(
                f"OpenAI error: {e.message}",
                reason="translator_error",
                extra={"model": model},
                status=e.status_code,
            ) from e
        except openai.APIConnectionError as e:
            raise ExternalServiceError(
                f"OpenAI unreachable: {e}",
                reason="translator_unreachable",
                extra={"model": model},
            ) from e

        if not response.choices:
            return ""
        content = response.choices[0].message.content or ""
        logger.debug("OpenAI %s returned %d chars (repair=%s)", model, len(content), repair)
        return content
