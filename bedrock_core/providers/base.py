"""Provider 抽象接口。

上层 ChatService 不直接依赖具体厂商的线上格式，而是依赖这些协议：

- MessageNormalizer：ChatTurn 列表 ⇄ 厂商请求体。
- StreamDecoder：厂商事件帧 → 纯文本增量。
- IdentityBroker：委托凭证的换取与身份确认。

接入其他厂商时，只需重新实现 MessageNormalizer 与 StreamDecoder。
"""

from typing import Any, Dict, Iterable, Iterator, Optional, Protocol

from bedrock_core.domain.models import (
    CallerIdentity,
    ChatTurn,
    DelegatedCredential,
    NormalizedRequest,
    StreamEventFrame,
)


class MessageNormalizer(Protocol):
    def normalize(
        self,
        turns: Iterable[ChatTurn],
        default_system: Optional[str],
        max_output_tokens: int,
        temperature: float,
    ) -> NormalizedRequest:
        ...

    def to_wire(self, req: NormalizedRequest) -> Dict[str, Any]:
        """序列化为厂商请求体。"""

        ...

    def extract_reply(self, data: Dict[str, Any]) -> str:
        """从非流式响应 JSON 中取出回复文本。"""

        ...


class StreamDecoder(Protocol):
    def decode(self, frames: Iterable[StreamEventFrame]) -> Iterator[str]:
        ...


class IdentityBroker(Protocol):
    def assume_delegated_identity(
        self,
        role_identifier: str,
        session_label: str,
        duration_seconds: int = 3600,
    ) -> DelegatedCredential:
        ...

    def who_am_i(self, credential: Optional[DelegatedCredential] = None) -> Optional[CallerIdentity]:
        ...
