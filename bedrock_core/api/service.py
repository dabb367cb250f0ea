"""对外 API 服务模块。

提供 Web 层调用的接口。ChatService 由调用方显式构造并持有，
不使用进程级单例，便于测试与凭证生命周期隔离。
"""

from typing import Callable, Iterable, Iterator, Optional

from bedrock_core.config.settings import settings
from bedrock_core.domain.exceptions import ValidationError
from bedrock_core.domain.models import CallerIdentity, NormalizedRequest
from bedrock_core.infrastructure.logging.logger import logger
from bedrock_core.providers.base import IdentityBroker, MessageNormalizer, StreamDecoder
from bedrock_core.providers.bedrock_client import BedrockClient
from bedrock_core.providers.credentials import CredentialManager, mode_from_settings
from bedrock_core.providers.normalizer import AnthropicMessagesNormalizer, TurnLike
from bedrock_core.providers.stream_decoder import BedrockStreamDecoder
from bedrock_core.providers.sts_broker import StsIdentityBroker


class ChatService:
    """一次对话 → 一次凭证检查 → 一次模型调用。"""

    def __init__(
        self,
        client: BedrockClient,
        broker: IdentityBroker,
        normalizer: Optional[MessageNormalizer] = None,
        decoder: Optional[StreamDecoder] = None,
        cfg=settings,
    ):
        self._client = client
        self._broker = broker
        self._normalizer = normalizer or AnthropicMessagesNormalizer()
        self._decoder = decoder or BedrockStreamDecoder()
        self._settings = cfg

    def build_request(self, turns: Iterable[TurnLike]) -> NormalizedRequest:
        return self._normalizer.normalize(
            turns,
            self._settings.system_prompt,
            self._settings.max_tokens,
            self._settings.temperature,
        )

    def generate_response(self, turns: Iterable[TurnLike]) -> str:
        """一次性生成回复文本。

        Raises:
            各种 domain.exceptions 中定义的异常
        """
        req = self.build_request(turns)
        try:
            return self._client.invoke(req)
        except Exception as e:
            logger.error(f"Generate response failed: {e}", extra={"extra": {"error": type(e).__name__}})
            raise

    def stream_response(self, turns: Iterable[TurnLike]) -> Iterator[str]:
        """返回惰性的文本增量序列；只能消费一次。

        调用方提前放弃时应调用 close()，以释放底层连接。
        """

        req = self.build_request(turns)
        return self._decoder.decode(self._client.invoke_stream(req))

    def generate_streaming_response(self, turns: Iterable[TurnLike], on_delta: Callable[[str], None]) -> str:
        """逐个把增量交给 on_delta，结束后返回完整文本。

        中途失败时异常向上抛出，已经交付的增量不会撤回。
        """

        parts = []
        deltas = self.stream_response(turns)
        try:
            for text in deltas:
                parts.append(text)
                on_delta(text)
        except Exception as e:
            logger.error(
                f"Streaming response failed: {e}",
                extra={"extra": {"error": type(e).__name__, "delivered": len(parts)}},
            )
            raise
        finally:
            close = getattr(deltas, "close", None)
            if close is not None:
                close()
        return "".join(parts)

    def who_am_i(self) -> Optional[CallerIdentity]:
        """诊断用：当前进程身份（尽力而为）。"""

        return self._broker.who_am_i()


def create_chat_service(cfg=settings) -> ChatService:
    """根据配置组装 ChatService。"""

    if not getattr(cfg, "aws_region", None):
        raise ValidationError(code="MISSING_CONFIG", message="aws_region not set")
    if not getattr(cfg, "bedrock_model", None):
        raise ValidationError(code="MISSING_CONFIG", message="bedrock_model not set")
    broker = StsIdentityBroker(cfg)
    mode = mode_from_settings(cfg)
    manager = CredentialManager(mode, broker, cfg)
    normalizer = AnthropicMessagesNormalizer()
    client = BedrockClient(manager, cfg, normalizer=normalizer)
    logger.info(
        "chat_service.created",
        extra={"extra": {
            "region": cfg.aws_region,
            "model_id": client.model_id,
            "mode": type(mode).__name__,
        }},
    )
    return ChatService(client, broker, normalizer=normalizer, cfg=cfg)
