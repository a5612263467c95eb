"""Prompt rendering utilities."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping, Optional

from agentloop.schemas import ChatMessage

from .prompts import PromptLibrary, PromptTemplate, build_default_prompts

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


class PromptTemplateError(ValueError):
    """Raised when a template is rendered without one of its required placeholders."""

    def __init__(self, *, template: str, missing: List[str]) -> None:
        self.template = template
        self.missing = missing
        super().__init__(
            f"Prompt template '{template}' is missing required placeholders: {', '.join(missing)}"
        )


@dataclass
class RenderedPrompt:
    system: str
    user: str

    def to_messages(self) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        if self.system:
            messages.append(ChatMessage(role="system", content=self.system))
        messages.append(ChatMessage(role="user", content=self.user))
        return messages


def render_prompt(template: PromptTemplate, values: Mapping[str, str]) -> RenderedPrompt:
    """Render a prompt template by ``{{placeholder}}`` substitution.

    Required placeholders must be present in ``values``; optional ones that are
    not supplied render as empty strings. Substitution is a single pass over the
    template text, so braces inside the supplied values (tool output, user
    text) are never interpreted as placeholders.
    """

    missing = [name for name in template.required if name not in values]
    if missing:
        raise PromptTemplateError(template=template.name, missing=missing)

    def _substitute(match: re.Match) -> str:
        return values.get(match.group(1), "")

    return RenderedPrompt(
        system=_PLACEHOLDER.sub(_substitute, template.system),
        user=_PLACEHOLDER.sub(_substitute, template.user),
    )


def render_named(
    library: Optional[PromptLibrary],
    name: str,
    values: Mapping[str, str],
) -> RenderedPrompt:
    """Look up ``name`` in ``library`` (falling back to the built-in template) and render it."""
    if library is not None and library.has(name):
        template = library.get(name)
    else:
        template = build_default_prompts().get(name)
    return render_prompt(template, values)


__all__ = ["PromptTemplateError", "RenderedPrompt", "render_prompt", "render_named"]
