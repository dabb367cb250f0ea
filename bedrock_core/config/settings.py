"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。

缺失的必填配置直接报错，不会用硬编码的占位值兜底。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("BEDROCK_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
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

    # ---- AWS / 身份代理 ----
    aws_region: str = Field(default="us-east-1", description="AWS 区域")
    cross_account_role_arn: Optional[str] = Field(
        default=None,
        description="跨账号委托角色 ARN；为空时使用进程默认凭证",
    )
    sts_session_name: str = Field(default="BedrockChatSession", description="AssumeRole 会话名")
    assume_role_duration_seconds: int = Field(
        default=3600,
        ge=900,
        le=43200,
        description="委托凭证有效期（秒）",
    )
    credential_refresh_margin_seconds: int = Field(
        default=300,
        ge=0,
        description="凭证过期前多少秒开始刷新",
    )
    verify_assumed_identity: bool = Field(
        default=True,
        description="委托成功后是否用新凭证再做一次身份确认（仅日志）",
    )

    # ---- 模型调用 ----
    bedrock_model: str = Field(
        default="chat",
        description="逻辑模型名（由 registry 映射）或 Bedrock 模型 ID",
    )
    bedrock_endpoint_url: Optional[str] = Field(
        default=None,
        description="Bedrock runtime 端点覆盖，默认按区域拼接",
    )
    system_prompt: str = Field(
        default="You are a helpful AI assistant.",
        description="默认系统提示词",
    )
    max_tokens: int = Field(default=4096, ge=1, description="单次回复最大 token 数")
    temperature: float = Field(default=0.7, ge=0.0, le=1.0, description="生成温度")
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("cross_account_role_arn", "bedrock_endpoint_url")
    @classmethod
    def blank_as_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("aws_region", "bedrock_model")
    @classmethod
    def require_non_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

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
