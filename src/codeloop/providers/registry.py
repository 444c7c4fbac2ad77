"""Model catalogue for the Anthropic adapter."""

from __future__ import annotations

from codeloop.types.providers import ModelInfo

DEFAULT_MODEL = "claude-sonnet-4-6"

# ---------------------------------------------------------------------------
# Model catalogue
# ---------------------------------------------------------------------------

MODELS: dict[str, ModelInfo] = {
    "claude-opus-4-6": ModelInfo(
        id="claude-opus-4-6",
        display_name="Claude Opus 4.6",
        context_window=200_000,
        max_output_tokens=32_768,
        input_cost_per_mtok=15.00,
        output_cost_per_mtok=75.00,
    ),
    "claude-sonnet-4-6": ModelInfo(
        id="claude-sonnet-4-6",
        display_name="Claude Sonnet 4.6",
        context_window=200_000,
        max_output_tokens=16_384,
        input_cost_per_mtok=3.00,
        output_cost_per_mtok=15.00,
    ),
    "claude-haiku-4-5-20251001": ModelInfo(
        id="claude-haiku-4-5-20251001",
        display_name="Claude Haiku 4.5",
        context_window=200_000,
        max_output_tokens=8_192,
        input_cost_per_mtok=0.80,
        output_cost_per_mtok=4.00,
    ),
    "claude-sonnet-4-5-20250514": ModelInfo(
        id="claude-sonnet-4-5-20250514",
        display_name="Claude Sonnet 4.5",
        context_window=200_000,
        max_output_tokens=16_384,
        input_cost_per_mtok=3.00,
        output_cost_per_mtok=15.00,
    ),
}

ALIASES: dict[str, str] = {
    "opus": "claude-opus-4-6",
    "sonnet": "claude-sonnet-4-6",
    "haiku": "claude-haiku-4-5-20251001",
}


def resolve_model(name: str) -> ModelInfo:
    """Resolve a model name or alias to its :class:`ModelInfo`.

    Raises
    ------
    KeyError
        When *name* does not match any known model or alias.

    Examples
    --------
    >>> resolve_model("sonnet").id
    'claude-sonnet-4-6'
    """
    resolved_id = ALIASES.get(name, name)
    if resolved_id not in MODELS:
        known = sorted(list(MODELS.keys()) + list(ALIASES.keys()))
        raise KeyError(f"Unknown model {name!r}. Known models: {', '.join(known)}")
    return MODELS[resolved_id]
