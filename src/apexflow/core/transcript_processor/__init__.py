from .llm_processor import (
    DEFAULT_ENHANCEMENTS,
    PROVIDERS,
    Enhancement,
    EnhancementMode,
    EnhancementProvider,
    LLMResponse,
)
from .prompt_assembler import (
    DEFAULT_TEMPLATE,
    PromptAssembler,
    PromptTemplate,
    SanitizedPrompt,
    TagSpec,
)
from .vocabulary_processor import apply_vocabulary_replacements

__all__ = [
    "Enhancement",
    "EnhancementMode",
    "EnhancementProvider",
    "LLMResponse",
    "PROVIDERS",
    "DEFAULT_ENHANCEMENTS",
    "PromptAssembler",
    "PromptTemplate",
    "SanitizedPrompt",
    "TagSpec",
    "DEFAULT_TEMPLATE",
    "apply_vocabulary_replacements",
]
