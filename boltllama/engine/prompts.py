"""System instruction presets and effective prompt construction."""

from __future__ import annotations

SYSTEM_PROMPTS: dict[str, str] = {
    "code_generation": (
        "You are an expert web developer. When asked to generate code, provide clean, well-structured, "
        "and production-ready code. Include comments where necessary. Return only the code without any "
        "explanation unless specifically asked."
    ),
    "code_explanation": (
        "You are an expert web developer. Explain the code clearly and concisely, breaking down complex "
        "concepts into understandable parts. Use examples when helpful."
    ),
    "bug_fix": (
        "You are an expert web developer and debugger. Analyze the provided code, identify bugs, and "
        "provide fixes with explanations of what was wrong and why the fix works."
    ),
    "code_review": (
        "You are an expert code reviewer. Review the provided code for quality, performance, security, "
        "and best practices. Provide constructive feedback and suggestions for improvement."
    ),
}

DEFAULT_SYSTEM_PROMPT = SYSTEM_PROMPTS["code_generation"]


def system_prompt_for(preset: str) -> str:
    """Look up a preset by name (e.g. "bug_fix")."""
    key = preset.strip().lower().replace("-", "_")
    if key not in SYSTEM_PROMPTS:
        available = ", ".join(sorted(SYSTEM_PROMPTS))
        raise ValueError(f"Unknown system prompt preset: {preset!r}. Available: {available}")
    return SYSTEM_PROMPTS[key]


def build_prompt(prompt: str, *, system_prompt: str | None, context: str | None = None) -> str:
    """Concatenate the system instruction, optional context and the user prompt.

    `system_prompt=None` means "use the default"; an empty string omits it.
    """
    instruction = DEFAULT_SYSTEM_PROMPT if system_prompt is None else system_prompt
    parts: list[str] = []
    if instruction:
        parts.append(instruction)
    if context:
        parts.append(f"Context:\n{context}")
    if parts:
        parts.append(f"User: {prompt}")
        return "\n\n".join(parts)
    return prompt
