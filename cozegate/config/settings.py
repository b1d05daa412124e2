"""Runtime settings."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COZEGATE_", extra="ignore", populate_by_name=True)

    app_name: str = "CozeGate"
    env: str = "dev"
    log_level: str = "info"
    # DEBUG 下是否打印完整请求正文；False 时只打 method/path + body_size
    log_full_request_body: bool = False
    # 空串表示不写日志文件，只输出到 stderr
    log_dir: str = "logs"
    host: str = "0.0.0.0"
    port: int = Field(default=3000, validation_alias=AliasChoices("COZEGATE_PORT", "PORT"))

    # 兼容旧部署的 COZE_API_BASE / BOT_ID / BOT_CONFIG 环境变量
    upstream_api_base: str = Field(
        default="api.coze.cn",
        validation_alias=AliasChoices("COZEGATE_UPSTREAM_API_BASE", "COZE_API_BASE"),
    )
    upstream_chat_path: str = "/v3/chat"
    upstream_vision_chat_path: str = "/v3/vision/chat"
    upstream_file_upload_path: str = "/v1/files/upload"
    upstream_timeout_seconds: float = 30.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20

    default_bot_id: str = Field(default="", validation_alias=AliasChoices("COZEGATE_DEFAULT_BOT_ID", "BOT_ID"))
    bot_config: str = Field(default="", validation_alias=AliasChoices("COZEGATE_BOT_CONFIG", "BOT_CONFIG"))
    bot_config_path: str = ""
    default_user: str = "apiuser"
    upload_inline_images: bool = True

    upload_dir: str = "uploads"
    upload_url_prefix: str = "/uploads"
    upload_field_name: str = "image"
    public_base_url: str = ""
    max_upload_bytes: int = 30 * 1024 * 1024
    max_request_body_bytes: int = 30 * 1024 * 1024

    image_placeholder: str = "[图片]"
    default_image_type: str = "image/jpeg"
    usage_prompt_tokens: int = 100
    usage_completion_tokens: int = 10
    # 非流式响应里固定回传的 system_fingerprint；空串则不输出该字段
    system_fingerprint: str = "fp_2f57f81c11"

    enable_cors: bool = True
    cors_allow_origins: str = "*"


settings = Settings()
