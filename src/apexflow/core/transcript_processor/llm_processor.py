import asyncio
import json
import os
import warnings
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import litellm
from litellm import acompletion, completion_cost
from pydantic import BaseModel, ConfigDict

from ...utils.logger import get_logger
from ..errors import EnhancementFailed
from .prompt_assembler import PromptTemplate, SanitizedPrompt, find_delimiters

logger = get_logger(__name__)

MAX_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 0.5
DEFAULT_TIMEOUT_SECONDS = 30.0

# provider id -> (display name, default api_base, environment variable)
PROVIDERS: Dict[str, tuple] = {
    "openai": ("OpenAI", None, "OPENAI_API_KEY"),
    "anthropic": ("Anthropic", None, "ANTHROPIC_API_KEY"),
    "groq": ("Groq", None, "GROQ_API_KEY"),
    "openrouter": ("OpenRouter", None, "OPENROUTER_API_KEY"),
    "ollama": ("Ollama (Local)", "http://localhost:11434", None),
    "gemini": ("Google Gemini", None, "GEMINI_API_KEY"),
    "other": ("Other", None, None),
}

TRANSIENT_ERRORS = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.InternalServerError,
    litellm.ServiceUnavailableError,
)


class EnhancementMode(str, Enum):
    RESTRICTIVE = "restrictive"
    ASSISTANT = "assistant"


class Enhancement(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    prompt: str

    def to_dict(self) -> dict:
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: dict) -> "Enhancement":
        return cls.model_validate(data)


@dataclass
class LLMResponse:
    content: str
    cost_usd: Optional[float] = None
    usage: Optional[dict] = None  # prompt_tokens, completion_tokens, total_tokens
    echoed_delimiters: int = 0


def _load_mode_prompts() -> Dict[str, str]:
    json_path = Path(__file__).parent / "enhancement_modes.json"
    with open(json_path, "r") as f:
        data = json.load(f)
    return {mode: entry["system_prompt"] for mode, entry in data.items()}


_mode_prompts: Optional[Dict[str, str]] = None


def get_mode_prompt(mode: Union[EnhancementMode, str], template: PromptTemplate) -> str:
    global _mode_prompts
    if _mode_prompts is None:
        _mode_prompts = _load_mode_prompts()

    mode = EnhancementMode(mode)
    tags = ", ".join(f"<{name}>" for name in template.tag_names)
    return _mode_prompts[mode.value].replace("{tags}", tags)


def build_system_prompt(
    mode: Union[EnhancementMode, str],
    template: PromptTemplate,
    enhancement: Optional[Enhancement] = None,
) -> str:
    system_prompt = get_mode_prompt(mode, template)
    if enhancement and enhancement.prompt.strip():
        system_prompt = f"{system_prompt}\n\n{enhancement.prompt.strip()}"
    return system_prompt


class EnhancementProvider:
    """Rewrites a sanitized prompt through any model litellm can route to."""

    @staticmethod
    def format_model_name(model: str, provider: str) -> str:
        known_prefixes = (
            "openrouter/",
            "ollama/",
            "gemini/",
            "groq/",
            "openai/",
            "anthropic/",
            "azure/",
            "huggingface/",
        )

        if model.startswith(known_prefixes):
            return model

        prefix_map = {
            "openrouter": "openrouter/",
            "ollama": "ollama/",
            "gemini": "gemini/",
            "groq": "groq/",
        }

        prefix = prefix_map.get(provider)
        if prefix:
            return f"{prefix}{model}"

        return model

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout

        model_info = litellm.model_cost.get(model, {})
        self._supports_system_messages = model_info.get("supports_system_messages", True)

        if not self._supports_system_messages:
            logger.info(f"Model {model} does not support system messages (per model_cost)")

        logger.info(f"EnhancementProvider initialized with model: {model}, api_base: {api_base}")

    @classmethod
    def from_settings(cls, settings, secret_resolver=None) -> "EnhancementProvider":
        provider = settings.llm_provider
        provider_settings = settings.get_provider_settings(provider)
        default_base = PROVIDERS.get(provider, (None, None, None))[1]

        return cls(
            model=cls.format_model_name(provider_settings.model or "gpt-4o-mini", provider),
            api_key=secret_resolver(provider) if secret_resolver else None,
            api_base=provider_settings.api_base or default_base,
            timeout=settings.enhancement_timeout,
        )

    async def enhance(
        self,
        prompt: SanitizedPrompt,
        mode: Union[EnhancementMode, str] = EnhancementMode.RESTRICTIVE,
        enhancement: Optional[Enhancement] = None,
    ) -> LLMResponse:
        mode = EnhancementMode(mode)
        if mode is EnhancementMode.ASSISTANT:
            logger.warning(
                "Assistant enhancement mode has materially weaker prompt-injection resistance"
            )

        title = enhancement.title if enhancement else mode.value
        logger.info(f"Applying enhancement '{title}' to prompt ({len(prompt.text)} chars)")

        system_prompt = build_system_prompt(mode, prompt.template, enhancement)
        if self._supports_system_messages:
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt.text},
            ]
        else:
            messages = [{"role": "user", "content": f"{system_prompt}\n\n{prompt.text}"}]
            logger.debug(f"Merged system prompt with user prompt for {self.model}")

        kwargs = {
            "model": self.model,
            "messages": messages,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        response = await self._complete(kwargs)

        try:
            result_text = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise EnhancementFailed(f"Malformed completion response: {e}") from e
        if not result_text or not result_text.strip():
            raise EnhancementFailed("Model returned an empty response")

        echoed = find_delimiters(result_text, prompt.template)
        if echoed:
            logger.warning(
                f"Sanitization anomaly: response echoed {len(echoed)} tag delimiter(s)"
            )

        try:
            with warnings.catch_warnings():
                warnings.filterwarnings(
                    "ignore",
                    message="Pydantic serializer warnings",
                    category=UserWarning,
                )
                cost = completion_cost(completion_response=response)
        except Exception:
            cost = None

        usage = None
        if getattr(response, "usage", None):
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        logger.info(
            f"Enhancement complete: {len(prompt.text)} -> {len(result_text)} chars, cost=${cost:.6f}"
            if cost
            else f"Enhancement complete: {len(prompt.text)} -> {len(result_text)} chars"
        )

        return LLMResponse(
            content=result_text.strip(),
            cost_usd=cost,
            usage=usage,
            echoed_delimiters=len(echoed),
        )

    async def _complete(self, kwargs: dict):
        last_error: Optional[Exception] = None

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return await acompletion(**kwargs)
            except TRANSIENT_ERRORS as e:
                last_error = e
                logger.warning(
                    f"Enhancement request failed (attempt {attempt}/{MAX_ATTEMPTS}): "
                    f"{type(e).__name__}"
                )
                if attempt < MAX_ATTEMPTS:
                    await asyncio.sleep(RETRY_DELAY_SECONDS)
            except Exception as e:
                logger.error(f"LLM processing failed: {type(e).__name__}: {e}")
                raise EnhancementFailed(f"Enhancement request rejected: {type(e).__name__}") from e

        raise EnhancementFailed(
            f"Enhancement unavailable after {MAX_ATTEMPTS} attempts: {type(last_error).__name__}"
        ) from last_error

    def is_configured(self) -> bool:
        if self.api_key:
            return True

        if self.model.startswith("ollama/"):
            return True

        env_vars = [env for _, _, env in PROVIDERS.values() if env]
        return any(os.environ.get(var) for var in env_vars)


def load_default_enhancements() -> List[Enhancement]:
    json_path = Path(__file__).parent / "enhancement_prompts.json"

    with open(json_path, "r") as f:
        data = json.load(f)
    return [Enhancement.model_validate(item) for item in data]


_default_enhancements: Optional[List[Enhancement]] = None


def get_default_enhancements() -> List[Enhancement]:
    global _default_enhancements
    if _default_enhancements is None:
        _default_enhancements = load_default_enhancements()
    return _default_enhancements


DEFAULT_ENHANCEMENTS = get_default_enhancements()
