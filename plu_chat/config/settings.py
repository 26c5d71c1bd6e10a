"""配置管理模块。

支持从环境变量、.env 以及 plu_chat.yaml / config.yaml 加载配置，
环境变量优先级最高。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFIG_FILE_NAMES = ("plu_chat.yaml", "config.yaml")
CONFIG_SECTION = "plu_chat"


def _config_candidates() -> List[Path]:
    explicit = os.getenv("PLU_CHAT_CONFIG_FILE")
    if explicit:
        return [Path(explicit).expanduser()]
    project_root = Path(__file__).resolve().parents[2]
    return [base / name for base in (Path.cwd(), project_root) for name in CONFIG_FILE_NAMES]


def _load_config_from_yaml() -> Dict[str, Any]:
    """读取第一个存在的 YAML 配置文件。

    文件中若有顶层 ``plu_chat:`` 段，只取该段；否则整个文件即为配置。
    """
    for path in dict.fromkeys(_config_candidates()):
        if not path.is_file():
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Skipping unreadable config {path}: {exc}")
            continue
        if isinstance(data, dict) and isinstance(data.get(CONFIG_SECTION), dict):
            data = data[CONFIG_SECTION]
        if not isinstance(data, dict):
            warnings.warn(f"Skipping config {path}: top level must be a mapping")
            continue
        return data
    return {}


class PydanticSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Webhook 相关配置 ----
    webhook_url: Optional[str] = Field(
        default=None,
        description="聊天 webhook 地址，每轮对话 POST 一次",
    )
    webhook_api_key: Optional[str] = Field(
        default=None,
        description="可选的 webhook Bearer 令牌",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 对账（reconciliation）参数 ----
    poll_window_ms: int = Field(default=3000, description="等待服务端落库的轮询窗口（毫秒）")
    poll_interval_ms: int = Field(default=350, description="两次轮询之间的间隔（毫秒）")
    poll_backoff: float = Field(
        default=1.0,
        description="轮询间隔的指数退避系数，1.0 表示固定间隔",
    )

    # ---- 持久化 ----
    persistence_backend: Literal["json", "supabase"] = Field(
        default="json",
        description="消息持久化后端：本地 json 文件或 Supabase",
    )
    storage_root: str = Field(default=".storage", description="json 后端的存储根目录")
    supabase_url: Optional[str] = Field(default=None, description="Supabase 项目 URL")
    supabase_key: Optional[str] = Field(default=None, description="Supabase anon/service key")

    # ---- 日志与追踪 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    trace_dir: Optional[str] = Field(
        default=None,
        description="每轮对话状态轨迹的输出目录，为空则不落盘",
    )

    locale: str = Field(default="fr", description="面向用户的提示语言")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("poll_window_ms", "poll_interval_ms")
    @classmethod
    def validate_positive_ms(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("polling values must be positive")
        return v

    @field_validator("poll_backoff")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("poll_backoff must be >= 1.0")
        return v

    @field_validator("supabase_key", "webhook_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = PydanticSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = type(settings)
