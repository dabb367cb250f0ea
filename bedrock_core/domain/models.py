"""统一的对话与凭证数据模型。

本模块定义了 Bedrock 客户端内部共享的标准数据结构：

- ChatTurn: 上层传入的一条对话（system/user/assistant）。
- NormalizedRequest: 归一化后、即将序列化为厂商请求体的请求。
- DelegatedCredential: 从身份代理换取的临时凭证。
- CredentialMode: 凭证模式（进程默认凭证 / 委托角色）。
- StreamEventFrame: 流式调用返回的单个二进制事件帧。

Provider 适配层（normalizer / stream_decoder）负责在这些模型
与具体厂商 JSON 之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional, Union

# 对话角色类型
Role = Literal["system", "user", "assistant"]

# 发给厂商的对话只允许 user/assistant，system 单独放在 system 字段
TurnRole = Literal["user", "assistant"]


@dataclass(frozen=True)
class ChatTurn:
    """一条逻辑对话消息。

    role 一般为 system/user/assistant；其他取值在归一化时按 user 处理。
    """

    role: str
    text: Optional[str]


@dataclass(frozen=True)
class ContentBlock:
    """结构化内容块，目前只有纯文本一种。"""

    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class NormalizedTurn:
    role: TurnRole
    content: List[ContentBlock]


@dataclass(frozen=True)
class NormalizedRequest:
    """归一化后的请求。

    - system_instruction: 最终生效的系统提示词（最后一条 system 覆盖前面的）。
    - turns: 非空的对话序列。
    - max_output_tokens / temperature: 来自配置。
    """

    system_instruction: Optional[str]
    turns: List[NormalizedTurn]
    max_output_tokens: int
    temperature: float


@dataclass(frozen=True)
class DelegatedCredential:
    """委托得到的临时凭证，只存在于内存中。"""

    access_key: str
    secret_key: str
    session_token: str
    expires_at: datetime

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        return self.expires_at <= now + margin

    @property
    def masked_access_key(self) -> str:
        # 日志里只保留前 4 位
        return f"{self.access_key[:4]}***" if self.access_key else "MISSING"


@dataclass(frozen=True)
class Ambient:
    """使用进程默认凭证链（环境变量、实例角色等），由外部负责刷新。"""


@dataclass(frozen=True)
class Delegated:
    """通过身份代理委托到指定角色。"""

    role_identifier: str


CredentialMode = Union[Ambient, Delegated]


@dataclass(frozen=True)
class CallerIdentity:
    """身份确认结果，仅用于诊断日志。"""

    account_id: str
    principal_arn: str
    user_id: Optional[str] = None


@dataclass
class StreamEventFrame:
    """事件流中的一个二进制帧。

    headers 保存帧头（如 :event-type、:message-type），
    payload 为原始字节，通常是 UTF-8 JSON。
    """

    payload: bytes
    headers: Dict[str, object] = field(default_factory=dict)

    @property
    def event_type(self) -> Optional[str]:
        value = self.headers.get(":event-type")
        return str(value) if value is not None else None

    @property
    def message_type(self) -> str:
        return str(self.headers.get(":message-type", "event"))
