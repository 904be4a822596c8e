"""Built-in default prompt set."""

from __future__ import annotations

from pathlib import Path

from .registry import DEFAULT_PROMPT_SET_ID, register_prompt_set

_FRAGMENT_TYPES = ("decisions", "insights", "focus", "narrative")


def _prompts_dir() -> Path:
    return Path(__file__).resolve().parent / "prompts"


def register() -> None:
    prompts = {
        "llm.json_only": "Respond with JSON only. No explanation, no markdown fencing.",
        "evolve.ground_truth_label": "INTELLIGENT DESIGN SESSION",
    }
    for pass_name in ("vertical", "horizontal"):
        for fragment_type in _FRAGMENT_TYPES:
            path = _prompts_dir() / f"{pass_name}_{fragment_type}.txt"
            prompts[f"evolve.{pass_name}.{fragment_type}"] = path.read_text(encoding="utf-8")
    register_prompt_set(DEFAULT_PROMPT_SET_ID, prompts, source=__name__)
