import logging
import re
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import ModelInference

from feedback_engine.config import Settings
from feedback_engine.errors import GenerationProviderError, GenerationTimeout
from feedback_engine.rag.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert educational assessor who provides constructive, "
    "source-based feedback to students."
)


def parse_chat_response(data: Any) -> str:
    """Pull the assistant message text out of a watsonx.ai chat response."""
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        choices = data.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message") or {}
            content = message.get("content")
            if isinstance(content, str):
                return content
        results = data.get("results")
        if isinstance(results, list) and results:
            return results[0].get("generated_text", "") or ""
        if "generated_text" in data:
            return data["generated_text"] or ""
    raise GenerationProviderError(
        "Unexpected chat response format from watsonx.ai",
        detail=f"type={type(data).__name__}",
    )


def clean_output(text: str) -> str:
    """Remove prompt echoes and label prefixes from model output."""
    cleaned = text.strip()
    cleaned = re.sub(r"^\s*Feedback\s*:\s*", "", cleaned, flags=re.IGNORECASE)
    # A model that echoes the template repeats the labelled sections
    cleaned = re.split(
        r"\n\s*(?:Relevant Source Materials|Instructions)\s*:", cleaned, flags=re.IGNORECASE
    )[0]
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


class GeneratorClient:
    def __init__(self, settings: Settings, client: Any = None):
        self.settings = settings
        if client is None:
            credentials = Credentials(
                api_key=settings.ibm_cloud_api_key,
                url=f"https://{settings.watsonx_region}.ml.cloud.ibm.com",
            )
            client = ModelInference(
                model_id=settings.watsonx_gen_model,
                project_id=settings.watsonx_project_id,
                credentials=credentials,
            )
        self.client = client

    def generate(
        self,
        prompt: str,
        system: str = SYSTEM_PROMPT,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """Send one chat request and return the cleaned completion.

        Raises:
            GenerationTimeout: The call exceeded settings.provider_timeout.
            GenerationProviderError: The call failed or produced no text.
        """
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]
        params = {
            "max_tokens": max_tokens or self.settings.max_new_tokens,
            "temperature": float(
                self.settings.temperature if temperature is None else temperature
            ),
        }
        try:
            response = call_with_timeout(
                lambda: self.client.chat(messages=messages, params=params),
                self.settings.provider_timeout,
            )
        except FutureTimeout as e:
            raise GenerationTimeout(
                f"Generation call timed out after {self.settings.provider_timeout}s"
            ) from e
        except Exception as e:
            logger.error(f"Generation error: {e}")
            raise GenerationProviderError(f"Generation call failed: {e}") from e

        data = response.get_result() if hasattr(response, "get_result") else response
        text = clean_output(parse_chat_response(data))
        if not text:
            raise GenerationProviderError("Generation returned empty feedback")
        return text
