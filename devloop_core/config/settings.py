"""配置管理模块。

支持从环境变量、.env、config.yaml 加载配置（优先级依次降低）。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


OUTPUT_FORMATS = ("text", "json", "stream-json")


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("DEVLOOP_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.append(Path.cwd() / "config.yaml")

    seen: set[Path] = set()
    for path in candidates:
        if path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称：openai（SSE 兼容接口）或 gemini（原生流式接口）",
    )
    default_model: str = Field(
        default="default",
        description="逻辑模型名，由 registry 映射为具体厂商模型；未登记的名称原样透传",
    )

    # OpenAI 兼容接口
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI 兼容接口 API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容接口基础URL",
    )
    # Gemini 原生接口
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini API 基础URL",
    )
    http_timeout: float = Field(default=120.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="文件日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    # ---- 会话 ----
    max_session_turns: int = Field(
        default=-1,
        description="单个会话允许的模型调用轮数上限，-1 表示不限制",
    )
    output_format: str = Field(default="text", description="输出格式：text / json / stream-json")
    cancel_notice_delay_ms: int = Field(
        default=200,
        ge=0,
        description="中断后显示 Cancelling... 提示前的等待时间（毫秒）",
    )

    # ---- 工具与 dev-loop ----
    workspace_root: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="工具与验证命令的工作目录",
    )
    allow_tool_absolute_path: bool = Field(
        default=False,
        description="是否允许工具访问任意绝对路径（默认禁止）",
    )
    dev_loop_default_max_retries: int = Field(
        default=5,
        ge=1,
        description="计划文件未声明 Max Retries 时的默认值",
    )
    shell_timeout: Optional[float] = Field(
        default=None,
        description="shell 命令超时时间（秒），为空表示不限制",
    )
    tool_output_limit: int = Field(
        default=20000,
        ge=256,
        description="单次工具输出回传给模型的最大字符数",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        value = (v or "").strip().lower()
        if value not in OUTPUT_FORMATS:
            raise ValueError(f"output_format must be one of {', '.join(OUTPUT_FORMATS)}")
        return value

    @field_validator("max_session_turns")
    @classmethod
    def validate_max_session_turns(cls, v: int) -> int:
        if v < -1:
            raise ValueError("max_session_turns must be -1 (unlimited) or >= 0")
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


settings = Settings()
