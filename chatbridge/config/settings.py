"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATBRIDGE_", extra="ignore")

    app_name: str = "ChatBridge"
    env: str = "dev"
    log_level: str = "info"
    # DEBUG 下是否打印完整请求正文；False 时只打 method/path + body_size
    log_full_request_body: bool = False
    log_json_limit: int = 4000
    host: str = "127.0.0.1"
    port: int = 18080

    backend_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    backend_api_key: str = ""
    backend_api_key_header: str = "x-goog-api-key"
    backend_timeout_seconds: float = 120.0
    backend_max_connections: int = 100
    backend_max_keepalive_connections: int = 20
    backend_stream_retries: int = 3
    backend_stream_backoff_ms: int = 500
    # 同一流内相同 name+args 的 tool call 只下发一次
    stream_dedup_tool_calls: bool = True
    # 每个流最多下发的 tool call 数，0 表示不限制
    stream_max_tool_calls: int = Field(default=8, ge=0)

    default_fast_model: str = "gemini-2.5-flash"
    default_full_model: str = "gemini-2.5-pro"
    # AUTO | ANY | NONE
    function_calling_mode: str = "AUTO"

    enable_default_tools: bool = False
    # 为空时使用包内 config/default_tools.yaml
    default_tools_path: str = ""

    max_request_body_bytes: int = 2_000_000
    max_messages_count: int = Field(default=500, ge=1)


settings = Settings()
