"""Kiln synthesis — turning a function spec into validated source.

Pipeline: PromptBuilder -> Synthesizer -> Validator -> (repair prompt -> Synthesizer -> Validator) x N

    prompts      — pure prompt construction (synthesis and repair forms)
    Synthesizer  — one oracle call per prompt, sanitised text out
    Validator    — static RestrictedPython compile + callable binding check
    RepairLoop   — the bounded state machine tying them together
"""

from .repair_loop import RepairLoop
from .synthesizer import Synthesizer
from .validator import Validator

__all__ = ["RepairLoop", "Synthesizer", "Validator"]
