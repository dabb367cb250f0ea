"""Bedrock Core 顶层包。

该包提供 Web 应用调用 Amazon Bedrock 文本模型的客户端核心，
包括配置加载、委托凭证管理、消息归一化、调用与流式解码。
"""

from bedrock_core.api.service import ChatService, create_chat_service

__all__ = ["ChatService", "create_chat_service"]
