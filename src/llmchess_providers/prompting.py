"""
Prompt builders and config for remote move requests using a modular template.

Callers supply system instructions and a template string with placeholders
that are substituted per request.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from .move_validator import side_to_move
from .providers.base import RequestOptions

DEFAULT_UCI_SYSTEM = "You are a chess engine. Respond with exactly one legal move in long algebraic UCI (e.g., e2e4). Return only the move."
DEFAULT_UCI_TEMPLATE = """Board FEN: {FEN}
Move history (SAN): {SAN_HISTORY}
Side to move: {SIDE_TO_MOVE}
{CONTEXT}
Rules:
1. The move must be legal in this position.
2. Castle with the king's move (e.g., e1g1).
3. Include the promotion piece when promoting (e.g., e7e8q).
Reply with only the best legal move in UCI (e.g., e2e4, g7g8q)."""

INVALID_FEEDBACK_TEMPLATE = "Your previous reply {PREVIOUS!r} was not a legal move in this position. Choose a different, legal move."

_TIME_CONTROL_HINTS = {
    "blitz": "Time control: blitz. Prefer a sound, practical move over deep calculation.",
    "rapid": "Time control: rapid. Balance speed and accuracy.",
    "classical": "Time control: classical. Take the time to find the strongest move.",
}


@dataclass
class PromptConfig:
    """Configuration for shaping move prompts using a custom template."""

    system_instructions: str = DEFAULT_UCI_SYSTEM
    template: str = DEFAULT_UCI_TEMPLATE
    history_plies: int = 20


def render_custom_prompt(template: str, values: Dict[str, str]) -> str:
    """Replace known placeholders in the template. Unknown tokens are left intact."""
    rendered = template or ""
    for key, val in values.items():
        rendered = rendered.replace(f"{{{key}}}", val)
    return rendered


def san_history_text(moves: List[str], max_plies: int) -> str:
    """Numbered SAN move list truncated to the last max_plies (assumes the game started from white)."""
    if not moves or max_plies <= 0:
        return ""
    parts: list[str] = []
    for idx, san in enumerate(moves):
        if idx % 2 == 0:
            parts.append(f"{idx // 2 + 1}. {san}")
        else:
            parts.append(san)
    return " ".join(parts[-max_plies:])


def context_lines(options: Optional[RequestOptions]) -> str:
    if options is None:
        return ""
    lines: list[str] = []
    if options.time_control:
        lines.append(_TIME_CONTROL_HINTS.get(options.time_control, f"Time control: {options.time_control}."))
    if options.time_remaining_s is not None:
        lines.append(f"Time remaining: {options.time_remaining_s:.0f}s.")
    if options.game_phase:
        lines.append(f"Game phase: {options.game_phase}.")
    if options.is_important_position:
        lines.append("This is a critical position; calculate carefully.")
    return "\n".join(lines)


def build_move_messages(fen: str, options: Optional[RequestOptions] = None, prompt_cfg: Optional[PromptConfig] = None, invalid_feedback: Optional[str] = None) -> list[dict]:
    """Construct chat messages asking for one UCI move in the given position."""
    cfg = prompt_cfg or PromptConfig()
    history = san_history_text(options.move_history if options else [], cfg.history_plies)
    values = {
        "FEN": fen,
        "SIDE_TO_MOVE": side_to_move(fen),
        "SAN_HISTORY": history or "(none)",
        "CONTEXT": context_lines(options),
    }
    user_content = render_custom_prompt(cfg.template, values)
    if invalid_feedback is not None:
        user_content += "\n" + INVALID_FEEDBACK_TEMPLATE.replace("{PREVIOUS!r}", repr(invalid_feedback[:80]))
    return [
        {"role": "system", "content": cfg.system_instructions},
        {"role": "user", "content": user_content},
    ]
