"""Runtime settings."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_CHAT_SYSTEM_PROMPT = """
You are an advanced customer service AI assistant that can understand context and user preferences.
You are helpful, friendly, and concise in your responses.
You can assist with product information, troubleshooting, order status, and general inquiries.
Always maintain a professional and supportive tone.
If you need more information to help the user, ask clarifying questions.
Remember details from earlier in the conversation to provide personalized assistance.
""".strip()

_VISION_SYSTEM_PROMPT = (
    "You are a helpful customer service assistant analyzing images for customers. "
    "Be detailed and helpful in your analysis."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATRELAY_", extra="ignore")

    app_name: str = "ChatRelay"
    env: str = "dev"
    log_level: str = "info"
    log_file: str = ""
    log_file_max_bytes: int = 10 * 1024 * 1024
    log_file_backup_count: int = 5
    host: str = "127.0.0.1"
    port: int = 8000
    # comma separated; empty keeps CORS middleware off
    cors_allow_origins: str = ""

    openai_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("CHATRELAY_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    upstream_base_url: str = "https://api.openai.com/v1"
    upstream_timeout_seconds: float = 30.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    chat_model: str = "gpt-4o"
    chat_system_prompt: str = _CHAT_SYSTEM_PROMPT
    stream_include_usage: bool = True

    vision_model: str = "gpt-4o"
    vision_max_tokens: int = 500
    vision_system_prompt: str = _VISION_SYSTEM_PROMPT
    default_image_prompt: str = "What's in this image?"

    transcription_model: str = "whisper-1"
    transcription_filename: str = "audio.webm"

    diagnostic_model: str = "gpt-3.5-turbo"
    diagnostic_max_tokens: int = 20
    ping_max_tokens: int = 10

    # <=0 disables the upload cap
    max_upload_bytes: int = 0


settings = Settings()
