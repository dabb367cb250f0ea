"""消息归一化（Anthropic Messages on Bedrock）。

把上层的 ChatTurn 列表转换为 NormalizedRequest，再序列化为请求体：

1. 丢弃空文本。
2. system 覆盖（最后一条生效，不拼接）；user/assistant 依次追加；
   其他角色一律按 user 处理。
3. 结果为空时补一条 user "Hello"，保证厂商不会收到空对话。

normalize 是纯函数，相同输入总是得到相同输出。
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from bedrock_core.domain.exceptions import UnexpectedResponseShape
from bedrock_core.domain.models import ChatTurn, ContentBlock, NormalizedRequest, NormalizedTurn
from bedrock_core.providers.registry import BEDROCK_CONFIG

FALLBACK_TEXT = "Hello"

TurnLike = Union[ChatTurn, Mapping[str, Any]]


def coerce_turn(item: TurnLike) -> ChatTurn:
    """Web 层传入的是 {"role", "content"} 字典，这里统一成 ChatTurn。"""

    if isinstance(item, ChatTurn):
        return item
    if isinstance(item, Mapping):
        text = item.get("content")
        if text is None:
            text = item.get("text")
        return ChatTurn(role=item.get("role") or "user", text=text)
    raise TypeError(f"Unsupported chat turn: {type(item).__name__}")


class AnthropicMessagesNormalizer:
    """MessageNormalizer 的 Anthropic Messages 实现。"""

    def __init__(self, schema_version: str = BEDROCK_CONFIG.schema_version):
        self._schema_version = schema_version

    def normalize(
        self,
        turns: Iterable[TurnLike],
        default_system: Optional[str],
        max_output_tokens: int,
        temperature: float,
    ) -> NormalizedRequest:
        system = default_system
        out: List[NormalizedTurn] = []
        for turn in (coerce_turn(t) for t in turns):
            if not turn.text:
                continue
            if turn.role == "system":
                system = turn.text
                continue
            role = turn.role if turn.role in ("user", "assistant") else "user"
            out.append(NormalizedTurn(role=role, content=[ContentBlock(text=turn.text)]))
        if not out:
            out.append(NormalizedTurn(role="user", content=[ContentBlock(text=FALLBACK_TEXT)]))
        return NormalizedRequest(
            system_instruction=system,
            turns=out,
            max_output_tokens=max_output_tokens,
            temperature=temperature,
        )

    def to_wire(self, req: NormalizedRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "anthropic_version": self._schema_version,
            "messages": [
                {
                    "role": t.role,
                    "content": [{"type": b.type, "text": b.text} for b in t.content],
                }
                for t in req.turns
            ],
            "max_tokens": req.max_output_tokens,
            "temperature": req.temperature,
        }
        if req.system_instruction:
            body["system"] = req.system_instruction
        return body

    def extract_reply(self, data: Dict[str, Any]) -> str:
        content = data.get("content") if isinstance(data, dict) else None
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type", "text") == "text" and isinstance(block.get("text"), str):
                    return block["text"]
        raise UnexpectedResponseShape("Unexpected response format from Bedrock", raw=data)
