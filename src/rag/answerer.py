from __future__ import annotations

"""Offline completion provider that answers by extracting from packed context."""

import re
from dataclasses import dataclass

from src.rag.context import estimate_tokens
from src.rag.guardrails import DEFAULT_REFUSAL
from src.rag.llm import Completion

_BLOCK_RE = re.compile(
    r"^\[([RW]\d+)\] (.+?):\n(.*?)(?=^\[[RW]\d+\] |\n\nWeb sources:|\n\nInstructions:|\Z)",
    re.M | re.S,
)


@dataclass
class ExtractiveCompletionClient:
    """Return a short extract from the first context or web block, cited with its marker."""
    max_chars: int = 480

    async def complete(
        self, system_prompt: str, user_prompt: str, max_tokens: int
    ) -> Completion:
        blocks = _BLOCK_RE.findall(user_prompt)
        if not blocks:
            text = DEFAULT_REFUSAL
        else:
            marker, source, content = blocks[0]
            snippet = self._truncate(" ".join(content.split()), max_tokens)
            text = (
                "## Answer\n"
                f"Based on the provided context: {snippet} [{marker}]\n\n"
                "## Sources\n"
                f"[{marker}] {source}"
            )
        return Completion(
            text=text,
            tokens_in=estimate_tokens(system_prompt + user_prompt),
            tokens_out=estimate_tokens(text),
        )

    def _truncate(self, text: str, max_tokens: int) -> str:
        """Trim text to the character budget without cutting words."""
        limit = min(self.max_chars, max(40, max_tokens * 4))
        if len(text) <= limit:
            return text
        return text[:limit].rsplit(" ", 1)[0] + "..."
