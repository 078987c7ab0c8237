"""Custom vocabulary replacements applied to raw transcripts."""

import re
from typing import Iterable, Tuple

from ...utils.logger import get_logger

logger = get_logger(__name__)


def apply_vocabulary_replacements(
    text: str,
    replacements: Iterable[Tuple[str, str]],
    case_sensitive: bool = False,
    whole_words: bool = True,
) -> str:
    """
    Apply vocabulary replacements to text.

    Rules run in the order they were defined, each on the output of the
    previous one. Replacement strings are inserted literally.

    Args:
        text: The transcript text
        replacements: (original, replacement) pairs
        case_sensitive: Match ``original`` exactly instead of ignoring case
        whole_words: Only match ``original`` between word boundaries

    Returns:
        Text with all replacements applied
    """
    if not text or not replacements:
        return text

    flags = 0 if case_sensitive else re.IGNORECASE
    result = text
    for original, replacement in replacements:
        if not original or not original.strip():
            continue

        pattern = re.escape(original.strip())
        if whole_words:
            pattern = rf"(?<!\w){pattern}(?!\w)"
        result = re.sub(pattern, lambda _m, r=replacement: r, result, flags=flags)

    if result != text:
        logger.debug(f"Applied vocabulary replacements: {len(text)} -> {len(result)} chars")

    return result
