"""
Builds the enhancement prompt from the transcript and captured context.

Every value is untrusted. Before a value is wrapped in its tag, all opening
and closing delimiters of every tag the template declares are stripped from
it, case-insensitively and tolerant of whitespace, until nothing more can be
removed. The assembled text is then re-scanned: a delimiter anywhere other
than where the assembler inserted one raises SanitizationAnomaly.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Tuple

from ...utils.logger import get_logger
from ..context.types import ContextSnapshot, SignalKind
from ..errors import SanitizationAnomaly

logger = get_logger(__name__)

TAG_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class TagSpec:
    name: str
    signal: SignalKind


@dataclass(frozen=True)
class PromptTemplate:
    """Ordered tags; each wraps the value of one context signal."""

    tags: Tuple[TagSpec, ...]

    def __post_init__(self):
        object.__setattr__(self, "tags", tuple(self.tags))

        seen = set()
        for tag in self.tags:
            if not TAG_NAME_PATTERN.match(tag.name):
                raise ValueError(f"Invalid prompt tag name: {tag.name!r}")
            if tag.name.upper() in seen:
                raise ValueError(f"Duplicate prompt tag name: {tag.name!r}")
            seen.add(tag.name.upper())

        transcript_tags = [t for t in self.tags if t.signal is SignalKind.TRANSCRIPT]
        if len(transcript_tags) != 1:
            raise ValueError("Prompt template needs exactly one transcript tag")

    @classmethod
    def from_config(cls, entries: Iterable[Mapping[str, str]]) -> "PromptTemplate":
        """Build from ``[{"tag": "CLIPBOARD_CONTEXT", "signal": "clipboard"}, ...]``."""
        return cls(tuple(TagSpec(e["tag"], SignalKind(e["signal"])) for e in entries))

    def to_config(self) -> List[dict]:
        return [{"tag": t.name, "signal": t.signal.value} for t in self.tags]

    @property
    def tag_names(self) -> List[str]:
        return [t.name for t in self.tags]

    def delimiter_pattern(self) -> "re.Pattern[str]":
        names = "|".join(re.escape(name) for name in self.tag_names)
        return re.compile(rf"<\s*/?\s*(?:{names})\b[^<>]*>", re.IGNORECASE)


DEFAULT_TEMPLATE = PromptTemplate(
    (
        TagSpec("CUSTOM_VOCABULARY", SignalKind.VOCABULARY),
        TagSpec("CLIPBOARD_CONTEXT", SignalKind.CLIPBOARD),
        TagSpec("CURRENT_WINDOW_CONTEXT", SignalKind.SCREEN),
        TagSpec("CURRENTLY_SELECTED_TEXT", SignalKind.SELECTED_TEXT),
        TagSpec("TRANSCRIPT", SignalKind.TRANSCRIPT),
    )
)


@dataclass(frozen=True)
class SanitizedPrompt:
    sections: Tuple[Tuple[str, str], ...]
    text: str
    template: PromptTemplate = field(default=DEFAULT_TEMPLATE, repr=False)
    stripped_count: int = 0

    @property
    def tag_names(self) -> List[str]:
        return [name for name, _ in self.sections]


def strip_delimiters(value: str, pattern: "re.Pattern[str]") -> Tuple[str, int]:
    """Remove delimiters until a fixpoint; returns the value and removal count."""
    removed = 0
    while True:
        value, count = pattern.subn("", value)
        if count == 0:
            return value, removed
        removed += count


class PromptAssembler:
    def __init__(self, template: PromptTemplate = DEFAULT_TEMPLATE):
        self.template = template

    def assemble(
        self,
        transcript: str,
        snapshot: Optional[ContextSnapshot] = None,
        template: Optional[PromptTemplate] = None,
    ) -> SanitizedPrompt:
        template = template or self.template
        pattern = template.delimiter_pattern()

        sections: List[Tuple[str, str]] = []
        stripped_total = 0

        for tag in template.tags:
            if tag.signal is SignalKind.TRANSCRIPT:
                raw = transcript or ""
            elif snapshot is None or not snapshot.is_enabled(tag.signal):
                continue
            else:
                raw = snapshot.text(tag.signal)

            value, stripped = strip_delimiters(raw, pattern)
            stripped_total += stripped
            value = value.strip()

            if not value and tag.signal is not SignalKind.TRANSCRIPT:
                continue
            sections.append((tag.name, value))

        text, expected_spans = self._serialize(sections)
        self._verify(text, expected_spans, pattern)

        if stripped_total:
            logger.warning(f"Stripped {stripped_total} tag delimiter(s) from prompt values")

        return SanitizedPrompt(
            sections=tuple(sections),
            text=text,
            template=template,
            stripped_count=stripped_total,
        )

    @staticmethod
    def _serialize(
        sections: List[Tuple[str, str]],
    ) -> Tuple[str, List[Tuple[int, int]]]:
        parts: List[str] = []
        spans: List[Tuple[int, int]] = []
        offset = 0

        for index, (name, value) in enumerate(sections):
            if index:
                parts.append("\n\n")
                offset += 2

            opening = f"<{name}>"
            closing = f"</{name}>"
            body = f"\n{value}\n"

            spans.append((offset, offset + len(opening)))
            offset += len(opening) + len(body)
            spans.append((offset, offset + len(closing)))
            offset += len(closing)

            parts.extend((opening, body, closing))

        return "".join(parts), spans

    @staticmethod
    def _verify(
        text: str, expected_spans: List[Tuple[int, int]], pattern: "re.Pattern[str]"
    ) -> None:
        found = [m.span() for m in pattern.finditer(text)]
        if found != expected_spans:
            logger.error(
                f"Assembled prompt has {len(found)} delimiter(s), expected {len(expected_spans)}"
            )
            raise SanitizationAnomaly("Tag delimiter found outside an inserted position")


def find_delimiters(text: str, template: PromptTemplate = DEFAULT_TEMPLATE) -> List[str]:
    return [m.group(0) for m in template.delimiter_pattern().finditer(text or "")]
