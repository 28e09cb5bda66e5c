"""
System prompt loading for the general (fallback) provider.

The assistant persona lives in a Markdown file so it can be edited without a
release. 'PromptProvider' loads it once and caches it; if the file is missing
or unreadable the built-in 'DEFAULT_SYSTEM_PROMPT' is used instead.
"""

from pathlib import Path

from loguru import logger

DEFAULT_SYSTEM_PROMPT = """You are CardSense AI, a helpful assistant for Indian credit card users.

Your expertise includes:
- Credit card recommendations and comparisons
- Rewards optimization and cashback strategies
- Credit score improvement tips
- Financial planning and budgeting advice
- Travel rewards and benefits guidance
- Security and fraud prevention

Guidelines:
- Be concise but informative (keep responses under 150 words)
- Provide actionable advice
- Use a friendly, professional tone
- Focus on Indian credit cards only
- If asked about specific financial products, provide general guidance but recommend consulting with financial advisors for personalized advice"""

REQUIRED_PROMPT_SECTIONS = (
    "# CardSense AI",
    "ROLE AND PERSONALITY",
    "OUTPUT FORMAT",
    "BEHAVIORAL CONSTRAINTS",
)


def validate_prompt(prompt: str) -> bool:
    """Check that a prompt file contains every section the persona relies on."""
    for section in REQUIRED_PROMPT_SECTIONS:
        if section not in prompt:
            logger.warning(f"Prompt validation failed: missing section {section!r}")
            return False
    return True


class PromptProvider:
    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._cached: str | None = None

    def get_system_prompt(self) -> str:
        if self._cached is not None:
            return self._cached
        if self.path is None:
            return DEFAULT_SYSTEM_PROMPT
        try:
            prompt = self.path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            logger.error(f"Failed to load system prompt from {self.path}: {exc}")
            return DEFAULT_SYSTEM_PROMPT
        if not prompt:
            logger.error(f"System prompt file {self.path} is empty, using built-in prompt")
            return DEFAULT_SYSTEM_PROMPT
        if not validate_prompt(prompt):
            logger.warning(f"System prompt {self.path} is missing expected sections, using it anyway")
        self._cached = prompt
        logger.debug(f"System prompt loaded from {self.path}")
        return prompt

    def clear_cache(self) -> None:
        self._cached = None
        logger.info("Prompt cache cleared - system prompt will be reloaded on next request")
