"""
pocket-lm :: Prompts

  - ChatTemplate: Jinja2 rendering of chat messages into one prompt
  - analysis prompts: one task prefix per document-analysis kind
  - clean_response: strip echoed prompt and leading separators

INL - 2025
"""

import re
from typing import List, Dict, Optional

# System/Human/Assistant turns, ending with an open assistant turn
DEFAULT_CHAT_TEMPLATE = (
    "{% for message in messages %}"
    "{% if message['role'] == 'system' %}System: {{ message['content'] }}\n\n"
    "{% elif message['role'] == 'user' %}Human: {{ message['content'] }}\n\n"
    "{% elif message['role'] == 'assistant' %}Assistant: {{ message['content'] }}\n\n"
    "{% endif %}"
    "{% endfor %}"
    "{% if add_generation_prompt %}Assistant: {% endif %}"
)

CHAT_ROLES = ("system", "user", "assistant")

ANALYSIS_PROMPTS = {
    "summary": "summarize: {content}",
    "keywords": "extract keywords: {content}",
    "sentiment": "sentiment: {content}",
    "classification": "classify: {content}",
}

ANALYSIS_KINDS = tuple(ANALYSIS_PROMPTS)


class ChatTemplate:
    """Renders [{"role": ..., "content": ...}, ...] into a prompt string."""

    def __init__(self, template_str: str = DEFAULT_CHAT_TEMPLATE):
        from jinja2 import Template
        self.template = Template(template_str)

    def apply(
        self,
        messages: List[Dict[str, str]],
        add_generation_prompt: bool = True,
    ) -> str:
        return self.template.render(
            messages=messages,
            add_generation_prompt=add_generation_prompt,
        )

    @staticmethod
    def from_file(path: str) -> "ChatTemplate":
        """Load template from a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(f.read())


def validate_messages(messages) -> Optional[str]:
    """Returns error message or None."""
    if not isinstance(messages, list) or not messages:
        return "messages must be a non-empty list"
    for i, msg in enumerate(messages):
        if not isinstance(msg, dict):
            return f"message {i} must be an object"
        if msg.get("role") not in CHAT_ROLES:
            return f"message {i}: role must be one of {', '.join(CHAT_ROLES)}"
        if not isinstance(msg.get("content"), str):
            return f"message {i}: content must be a string"
    return None


def build_analysis_prompt(kind: str, content: str) -> str:
    if kind not in ANALYSIS_PROMPTS:
        raise ValueError(f"Unknown analysis kind: {kind}. Expected one of {', '.join(ANALYSIS_KINDS)}")
    return ANALYSIS_PROMPTS[kind].format(content=content)


def content_preview(content: str, limit: int = 200) -> str:
    return content[:limit] + ("..." if len(content) > limit else "")


_LEADING_SEP_RE = re.compile(r"^[:\-\s]+")
_MULTI_WS_RE = re.compile(r"\s+")


def clean_response(response: str, prompt: str = "") -> str:
    """Drop an echoed prompt, leading ':'/'-' separators, and repeated whitespace."""
    cleaned = response.replace(prompt, "", 1) if prompt else response
    cleaned = _LEADING_SEP_RE.sub("", cleaned.strip())
    return _MULTI_WS_RE.sub(" ", cleaned)
