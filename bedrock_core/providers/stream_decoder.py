"""流式事件解码。

Bedrock 的 chunk 帧 payload 形如 {"bytes": "<base64>"}，
base64 解开后是 Anthropic 的流式事件 JSON。只有
content_block_delta 事件携带文本增量，其他事件一律忽略。

单个帧损坏时记录警告并跳过，不影响后续帧。
"""

import base64
import binascii
import json
from typing import Any, Dict, Iterable, Iterator, Optional

from bedrock_core.domain.models import StreamEventFrame
from bedrock_core.infrastructure.logging.logger import logger

CONTENT_DELTA = "content_block_delta"


class DeltaStream:
    """惰性的文本增量序列。

    close() 会一并关闭底层帧来源，即使还没开始迭代。
    """

    def __init__(self, source: Iterable[StreamEventFrame], deltas: Iterator[str]):
        self._source = source
        self._deltas = deltas

    def __iter__(self) -> "DeltaStream":
        return self

    def __next__(self) -> str:
        return next(self._deltas)

    def close(self) -> None:
        try:
            self._deltas.close()
        finally:
            close = getattr(self._source, "close", None)
            if close is not None:
                close()


class BedrockStreamDecoder:
    """StreamDecoder 的 Bedrock/Anthropic 实现。"""

    def decode(self, frames: Iterable[StreamEventFrame]) -> DeltaStream:
        """逐帧解码，惰性产出文本增量。

        传输层异常（如 StreamTransportError）原样向上抛出，终止序列。
        """

        return DeltaStream(frames, self._deltas(frames))

    def _deltas(self, frames: Iterable[StreamEventFrame]) -> Iterator[str]:
        for index, frame in enumerate(frames):
            if frame.event_type not in (None, "chunk"):
                continue
            try:
                event = self._parse(frame.payload)
            except (UnicodeDecodeError, ValueError, binascii.Error, TypeError) as e:
                logger.warning(
                    "stream.frame.malformed",
                    extra={"extra": {"index": index, "error": str(e), "size": len(frame.payload or b"")}},
                )
                continue
            text = self._delta_text(event)
            if text:
                yield text

    @staticmethod
    def _parse(payload: bytes) -> Dict[str, Any]:
        envelope = json.loads(payload.decode("utf-8"))
        if not isinstance(envelope, dict):
            raise ValueError("frame payload is not a JSON object")
        if "bytes" in envelope:
            inner = base64.b64decode(envelope["bytes"], validate=True)
            envelope = json.loads(inner.decode("utf-8"))
            if not isinstance(envelope, dict):
                raise ValueError("event payload is not a JSON object")
        return envelope

    @staticmethod
    def _delta_text(event: Dict[str, Any]) -> Optional[str]:
        if event.get("type") != CONTENT_DELTA:
            return None
        delta = event.get("delta")
        if not isinstance(delta, dict):
            return None
        text = delta.get("text")
        return text if isinstance(text, str) else None
