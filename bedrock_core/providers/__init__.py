"""Bedrock Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护模型配置 (registry)。
- 身份代理 (sts_broker) 与凭证生命周期 (credentials)。
- 消息归一化 (normalizer)、调用 (bedrock_client)、流式解码 (stream_decoder)。
"""

from bedrock_core.providers.bedrock_client import BedrockClient
from bedrock_core.providers.credentials import CredentialManager
from bedrock_core.providers.normalizer import AnthropicMessagesNormalizer
from bedrock_core.providers.stream_decoder import BedrockStreamDecoder
from bedrock_core.providers.sts_broker import StsIdentityBroker

__all__ = [
    "AnthropicMessagesNormalizer",
    "BedrockClient",
    "BedrockStreamDecoder",
    "CredentialManager",
    "StsIdentityBroker",
]
