from .prompts import PromptProvider, TuiPrompts
from .questions import ask_questions, check_system_memory, display_exit_banner, display_intro_banner

__all__ = [
    "PromptProvider",
    "TuiPrompts",
    "ask_questions",
    "check_system_memory",
    "display_exit_banner",
    "display_intro_banner",
]
