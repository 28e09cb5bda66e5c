"""
Gateway configuration.

'GatewaySettings' collects every external input the gateway consumes: provider
endpoints, the primary wire format, model identifiers, timeouts and the
history window. It is a plain pydantic model so tests and embedding
applications can construct it directly; 'from_env' builds it from environment
variables.

Secrets are looked up in order:
    1. /secrets/<NAME> - mounted secret file
    2. <NAME> environment variable
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field

from cardsense_chat.llms.knowledge import WireFormat

DEFAULT_FALLBACK_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_FALLBACK_MODEL = "openai/gpt-4o-mini"
DEFAULT_PRIMARY_MODEL_LABEL = "cardsense-rag"
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_HISTORY_WINDOW = 20


def _get_secret(name: str, secrets_dir: Path = Path("/secrets")) -> str:
    """Load a secret from a mounted secret file or an environment variable.

    Raises ValueError if neither is available.
    """
    secret_file = secrets_dir / name
    if secret_file.exists():
        return secret_file.read_text().strip()
    key = os.environ.get(name, "")
    if not key:
        raise ValueError(
            f"{name} not found. Either:\n"
            f"  - Mount it as a secret file at {secret_file}, or\n"
            f"  - Set the {name} environment variable."
        )
    return key


def _require_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise ValueError(f"{name} environment variable is required but not set")
    return value


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() == "true"


class GatewaySettings(BaseModel):
    """
    Settings for the providers, the gateway and the store.

    Attributes:
        question_api_url: Endpoint of the knowledge backend speaking the
            question-only format.
        messages_api_url: Endpoint of the knowledge backend speaking the
            message-array format.
        use_question_api: Selects the question-only format (and endpoint).
        fallback_api_key: API key of the general chat-completion backend.
        history_window: Number of most recent messages sent as context.
    """

    question_api_url: str | None = None
    messages_api_url: str | None = None
    use_question_api: bool = False
    primary_model_label: str = DEFAULT_PRIMARY_MODEL_LABEL

    fallback_api_key: str
    fallback_base_url: str = DEFAULT_FALLBACK_BASE_URL
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    app_name: str = "CardSense AI"
    app_url: str = "https://cardsense.ai"

    request_timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)
    history_window: int = Field(default=DEFAULT_HISTORY_WINDOW, ge=0)
    system_prompt_path: Path | None = None
    database_url: str = "sqlite+aiosqlite:///cardsense_chat.db"
    log_level: str = "INFO"

    @property
    def wire_format(self) -> WireFormat:
        return WireFormat.QUESTION if self.use_question_api else WireFormat.MESSAGES

    @property
    def primary_endpoint(self) -> str:
        endpoint = self.question_api_url if self.use_question_api else self.messages_api_url
        if not endpoint:
            name = "NEW_RAG_API_BASE_URL" if self.use_question_api else "OLD_RAG_API_BASE_URL"
            raise ValueError(f"{name} is required for the {self.wire_format.value!r} wire format but not set")
        return endpoint

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        use_question_api = _env_flag("USE_NEW_RAG_API")
        settings = cls(
            question_api_url=_require_env("NEW_RAG_API_BASE_URL") if use_question_api else None,
            messages_api_url=None if use_question_api else _require_env("OLD_RAG_API_BASE_URL"),
            use_question_api=use_question_api,
            primary_model_label=os.getenv("PRIMARY_MODEL_LABEL") or DEFAULT_PRIMARY_MODEL_LABEL,
            fallback_api_key=_get_secret("OPENROUTER_API_KEY"),
            fallback_base_url=os.getenv("OPENROUTER_BASE_URL") or DEFAULT_FALLBACK_BASE_URL,
            fallback_model=os.getenv("DEFAULT_AI_MODEL") or DEFAULT_FALLBACK_MODEL,
            app_name=os.getenv("APP_NAME") or "CardSense AI",
            app_url=os.getenv("APP_URL") or "https://cardsense.ai",
            request_timeout=float(os.getenv("REQUEST_TIMEOUT_SECONDS") or DEFAULT_TIMEOUT_SECONDS),
            history_window=int(os.getenv("HISTORY_WINDOW") or DEFAULT_HISTORY_WINDOW),
            system_prompt_path=Path(os.environ["SYSTEM_PROMPT_PATH"]) if os.getenv("SYSTEM_PROMPT_PATH") else None,
            database_url=os.getenv("DATABASE_URL") or "sqlite+aiosqlite:///cardsense_chat.db",
            log_level=os.getenv("LOG_LEVEL") or "INFO",
        )
        return settings
