from typing import Literal, Optional

from pydantic_settings import BaseSettings

DEFAULT_SYSTEM_INSTRUCTION = """You are a capable assistant answering questions asked in a Slack thread.

Rules for your answer:
- The answer is shown in Slack, so format it with Slack mrkdwn: bold is *text*, lists use •.
- Say that the answer was generated by Google Gemini and may be inaccurate, and that the asker should check with an instructor when unsure.
- If the intent of the question is unclear, explain concretely how the question could be rephrased so that an instructor can understand it."""


class Settings(BaseSettings):
    gemini_api_key: Optional[str] = None
    slack_bot_token: Optional[str] = None
    require_credentials: bool = False

    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    slack_api_base_url: str = "https://slack.com/api"

    database_url: str = "sqlite:///./relay.db"
    redis_url: Optional[str] = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 0.3
    dedup_ttl_seconds: int = 600

    reply_mode: Literal["deferred", "inline"] = "deferred"
    continuation_delay_seconds: float = 1.0
    continuation_ttl_seconds: int = 600
    continuation_worker_enabled: bool = True
    continuation_worker_interval_seconds: float = 1.0
    continuation_batch_limit: int = 10
    continuation_concurrency: int = 4

    history_max_messages: int = 20
    history_char_budget: int = 30000
    max_attachment_bytes: int = 20 * 1024 * 1024

    flush_threshold: int = 30
    edit_interval_seconds: float = 1.0
    max_message_length: int = 3900

    placeholder_text: str = "Generating an answer, please wait..."
    error_text: str = "Sorry, something went wrong. Please try again later."
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    temperature: float = 0.7
    max_output_tokens: int = 2048

    http_timeout_seconds: float = 30.0
    llm_timeout_seconds: float = 120.0

    log_level: str = "INFO"
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"

    def missing_credentials(self) -> list[str]:
        missing = []
        if not self.gemini_api_key:
            missing.append("GEMINI_API_KEY")
        if not self.slack_bot_token:
            missing.append("SLACK_BOT_TOKEN")
        return missing


settings = Settings()
