from __future__ import annotations

import re
from typing import Any

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment

from evalgrid.errors import ConfigError
from evalgrid.models import Conversation, ConversationTurn, FilePart, PromptPart, TextPart

_env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)
_FILE_MARK = "\x00file:{}\x00"
_FILE_MARK_RE = re.compile(r"\x00file:(\d+)\x00")
_ROLES = {"system", "user", "assistant", "developer"}


class PromptFormatter:
    """
    Renders a prompt template into a conversation.

    A plain string becomes a single user turn. A list of one-key mappings
    (`{"system": "..."}`, `{"user": "..."}`) becomes one turn per entry.
    Variables holding FileParts are emitted as separate content parts at the
    position they are referenced.
    """

    def __init__(self, prompt: str | list[dict[str, str]]) -> None:
        self.prompt = prompt
        try:
            if isinstance(prompt, str):
                self._turns = [("user", _env.from_string(prompt))]
            else:
                self._turns = [_parse_turn(turn) for turn in prompt]
        except TemplateError as exc:
            raise ConfigError(f"Invalid prompt template: {exc}") from exc

    def format(self, variables: dict[str, Any]) -> Conversation:
        files: list[FilePart] = []
        rendered_vars = {k: _replace_files(v, files) for k, v in variables.items()}
        conversation: Conversation = []
        for role, template in self._turns:
            text = template.render(rendered_vars)
            conversation.append(ConversationTurn(role=role, content=_split_parts(text, files)))
        return conversation


def render_text(source: str, variables: dict[str, Any]) -> str:
    return _env.from_string(source).render(variables)


def compile_expression(source: str):
    """Compile a sandboxed boolean expression such as `history | length < 3`."""
    try:
        return _env.compile_expression(source.strip())
    except TemplateError as exc:
        raise ConfigError(f"Invalid expression {source!r}: {exc}") from exc


def _parse_turn(turn: dict[str, str]):
    if len(turn) != 1:
        raise ConfigError(f"Conversation turn must have exactly one role key, got {sorted(turn)}")
    ((role, source),) = turn.items()
    if role not in _ROLES:
        raise ConfigError(f"Unknown conversation role: {role}")
    return role, _env.from_string(source)


def _replace_files(value: Any, files: list[FilePart]) -> Any:
    if isinstance(value, FilePart):
        files.append(value)
        return _FILE_MARK.format(len(files) - 1)
    if isinstance(value, list):
        return [_replace_files(v, files) for v in value]
    return value


def _split_parts(text: str, files: list[FilePart]) -> list[PromptPart]:
    parts: list[PromptPart] = []
    pos = 0
    for match in _FILE_MARK_RE.finditer(text):
        before = text[pos:match.start()]
        if before.strip():
            parts.append(TextPart(text=before))
        parts.append(files[int(match.group(1))])
        pos = match.end()
    rest = text[pos:]
    if rest.strip() or not parts:
        parts.append(TextPart(text=rest))
    return parts
