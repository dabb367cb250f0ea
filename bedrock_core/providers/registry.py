"""Provider 与模型配置。

本模块将“逻辑模型名”与“Bedrock 模型 ID”解耦：

- 逻辑名（logical_name）：在配置里使用的统一名称，例如 "chat"。
- provider_model：Bedrock 实际的模型 ID，例如 "anthropic.claude-3-5-sonnet-20240620-v1:0"。

配置里也可以直接写 Bedrock 模型 ID，此时原样使用。"""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str


@dataclass
class ProviderConfig:
    """Bedrock runtime 的整体配置。"""

    name: str
    endpoint_template: str
    signing_service: str
    schema_version: str
    models: Dict[str, ModelConfig]

    def endpoint_for(self, region: str, override: Optional[str] = None) -> str:
        return (override or self.endpoint_template.format(region=region)).rstrip("/")


BEDROCK_CONFIG = ProviderConfig(
    name="bedrock",
    endpoint_template="https://bedrock-runtime.{region}.amazonaws.com",
    signing_service="bedrock",
    schema_version="bedrock-2023-05-31",
    models={
        "chat": ModelConfig(
            logical_name="chat",
            provider_model="anthropic.claude-3-5-sonnet-20240620-v1:0",
        ),
        "chat-fast": ModelConfig(
            logical_name="chat-fast",
            provider_model="anthropic.claude-3-haiku-20240307-v1:0",
        ),
    },
)


def resolve_model_id(name: str) -> str:
    """逻辑名映射为模型 ID；不在表中的名称视为已经是模型 ID。"""

    key = name.lower()
    for k, cfg in BEDROCK_CONFIG.models.items():
        if k.lower() == key:
            return cfg.provider_model
    return name
