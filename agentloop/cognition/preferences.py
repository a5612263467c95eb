"""Detect preferences users state about themselves and record them in the grounding.

Patterns are tried from most to least specific: domain ("I'm interested in
X"), expertise level ("explain like I'm a beginner"), style ("I prefer short
explanations") and finally profession ("I'm a data scientist").
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

from agentloop.schemas import AgentContext, PreferenceIntent
from agentloop.tokens import Tokenizer

from .context import set_user_preference

_END = r"(?:\.|,|$)"

DOMAIN_PATTERNS = (
    re.compile(rf"^i(?:'m| am) (?:interested|specializing|focused|working) in (.+?){_END}", re.IGNORECASE),
    re.compile(rf"^my (?:field|area|domain|specialty|expertise) is (.+?){_END}", re.IGNORECASE),
    re.compile(rf"^i (?:study|research|focus on) (.+?){_END}", re.IGNORECASE),
)

# Only known level keywords, so "I am a nurse in Ohio" stays a profession
LEVEL_PATTERNS = (
    re.compile(
        rf"^explain (?:it |this |things )?(?:to me )?(?:like|as if) i(?:'m| am| were) (?:a )?(.+?){_END}",
        re.IGNORECASE,
    ),
    re.compile(
        r"^i(?:'m| am) (?:a )?(?:complete |total )?(beginner|intermediate|advanced|expert|novice|newbie) "
        rf"(?:in|at|with) (.+?){_END}",
        re.IGNORECASE,
    ),
    re.compile(rf"^i(?:'m| am) (?:a )?(.+?) level{_END}", re.IGNORECASE),
    re.compile(rf"^treat me (?:like|as) (?:a )?(.+?){_END}", re.IGNORECASE),
)

STYLE_PATTERNS = tuple(
    re.compile(rf"^{lead} (.+?) (?:explanations?|style|format|responses?){_END}", re.IGNORECASE)
    for lead in ("i prefer", "i like", "please (?:use|give me)", "i want")
)

PROFESSION_PATTERNS = (
    re.compile(rf"^i(?:'m| am) (?:a |an )?(.+?){_END}", re.IGNORECASE),
    re.compile(rf"^i work as (?:a |an )?(.+?){_END}", re.IGNORECASE),
    re.compile(rf"^i(?:'m| am) working as (?:a |an )?(.+?){_END}", re.IGNORECASE),
    re.compile(rf"^my (?:job|profession|role|occupation) is (?:a |an )?(.+?){_END}", re.IGNORECASE),
)

# "I'm here", "I'm trying to ..." and the like are not professions
NOT_A_PROFESSION = (
    "here",
    "there",
    "ready",
    "done",
    "fine",
    "good",
    "okay",
    "ok",
    "sure",
    "not sure",
    "confused",
    "lost",
    "stuck",
    "having trouble",
    "looking for",
    "trying to",
    "going to",
    "about to",
)


def _is_profession(content: str) -> bool:
    lowered = content.lower()
    return not any(lowered == phrase or lowered.startswith(phrase + " ") for phrase in NOT_A_PROFESSION)


def detect_preference_intent(message: str) -> Optional[PreferenceIntent]:
    """Return the preference stated by ``message``, or None when it states none."""
    text = message.strip()
    if not text:
        return None

    for pattern in DOMAIN_PATTERNS:
        match = pattern.match(text)
        if match:
            return PreferenceIntent(type="domain", content=f"User's domain: {match.group(1).strip()}")

    for pattern in LEVEL_PATTERNS:
        match = pattern.match(text)
        if match:
            level = match.group(1).strip()
            topic = match.group(2).strip() if pattern.groups > 1 else ""
            content = f"Explain at {level} level for {topic}" if topic else f"Explain at {level} level"
            return PreferenceIntent(type="style", content=content)

    for pattern in STYLE_PATTERNS:
        match = pattern.match(text)
        if match:
            return PreferenceIntent(type="style", content=f"Preferred explanation style: {match.group(1).strip()}")

    for pattern in PROFESSION_PATTERNS:
        match = pattern.match(text)
        if match and _is_profession(match.group(1).strip()):
            return PreferenceIntent(type="expertise", content=f"User is {match.group(1).strip()}")

    return None


def apply_preference_intent(
    context: AgentContext,
    message: str,
    tokenizer: Optional[Tokenizer] = None,
) -> Tuple[AgentContext, Optional[PreferenceIntent]]:
    """Record the preference ``message`` states, keyed by its type.

    A later statement of the same type replaces the earlier one.
    """
    intent = detect_preference_intent(message)
    if intent is None:
        return context, None
    return set_user_preference(context, intent.type, intent.content, tokenizer), intent


__all__ = ["detect_preference_intent", "apply_preference_intent"]
