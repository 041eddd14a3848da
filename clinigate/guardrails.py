"""
Prompt Guardrail Builder.

Every prompt sent to the model starts with a non-negotiable negative
constraint block, followed by the word cap, the task instruction rendered
from the request context, and finally the sanitized clinician question.
The word cap is mirrored into ``max_tokens`` on the provider call so the
instruction and the hard limit agree.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

from pydantic import BaseModel

from clinigate.config import GatewayPolicy, TaskConfig
from clinigate.errors import UnknownTaskError

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_MISSING = "not recorded"
# Approximate tokens per English word.
_TOKENS_PER_WORD = 1.5


class GuardedPrompt(BaseModel):
    task: str
    prompt: str
    temperature: float
    max_tokens: int
    max_words: int
    prompt_version: str


class GuardrailBuilder:
    def __init__(self, policy: GatewayPolicy) -> None:
        self._policy = policy

    def constraint_block(self, max_words: int) -> str:
        constraints = self._policy.guardrail_constraints
        if len(constraints) > 1:
            rules = ", ".join(constraints[:-1]) + f", or {constraints[-1]}"
        else:
            rules = "".join(constraints)
        return (
            "You are a clinical decision support assistant. "
            f"You are NOT allowed to: {rules}.\n"
            f"{self._policy.missing_data_instruction}\n"
            f"Keep your response under {max_words} words."
        )

    def build(
        self,
        task: str,
        context: dict[str, Any],
        question: Optional[str] = None,
    ) -> GuardedPrompt:
        """Build the final prompt for ``task``.

        Raises:
            UnknownTaskError: If the task is not configured.
        """
        config = self._policy.tasks.get(task)
        if config is None:
            raise UnknownTaskError(task)

        max_tokens = min(config.max_tokens, math.ceil(config.max_words * _TOKENS_PER_WORD))
        sections = [
            self.constraint_block(config.max_words),
            render_template(config, context),
        ]
        if question:
            sections.append(f"Clinician question: {question}")

        return GuardedPrompt(
            task=task,
            prompt="\n\n".join(sections),
            temperature=config.temperature,
            max_tokens=max_tokens,
            max_words=config.max_words,
            prompt_version=config.prompt_version,
        )


def render_template(config: TaskConfig, context: dict[str, Any]) -> str:
    values = dict(context)
    values.setdefault("task_description", config.description)
    explainability = context.get("explainability")
    if isinstance(explainability, dict):
        priority = explainability.get("priority") or (explainability.get("classification") or {}).get("priority")
        if priority:
            values.setdefault("priority", priority)
        actions = (
            explainability.get("recommended_actions")
            or explainability.get("recommendedActions")
            or explainability.get("actions")
        )
        if actions:
            values.setdefault("actions", ", ".join(str(a.get("code", a)) if isinstance(a, dict) else str(a) for a in actions))

    def substitute(match: re.Match) -> str:
        value = values.get(match.group(1))
        if value is None or value == "":
            return _MISSING
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True, default=str)
        return str(value)

    return _PLACEHOLDER.sub(substitute, config.template)


def truncate_to_words(text: str, max_words: int) -> tuple[str, bool]:
    """Trim ``text`` to ``max_words`` words, keeping the original spacing."""
    words = list(re.finditer(r"\S+", text))
    if len(words) <= max_words:
        return text, False
    return text[: words[max_words - 1].end()].rstrip() + "...", True
