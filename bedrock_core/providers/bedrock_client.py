"""Bedrock runtime 调用客户端。

本模块负责：

1. 每次调用前通过 CredentialManager 确认凭证可用（必要时刷新）。
2. 将 NormalizedRequest 序列化为请求体，并用 SigV4 签名。
3. 通过 httpx 发起非流式（/invoke）或流式（/invoke-with-response-stream）调用。
4. 把网络/厂商错误包装为 UpstreamError，保留状态码与 request id。

流式调用只返回原始事件帧，文本解码交给 StreamDecoder。
"""

import json
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

import httpx
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.eventstream import EventStreamBuffer, ParserError

from bedrock_core.config.settings import settings
from bedrock_core.domain.exceptions import (
    EmptyConversation,
    StreamTransportError,
    UnexpectedResponseShape,
    UpstreamError,
)
from bedrock_core.domain.models import NormalizedRequest, StreamEventFrame
from bedrock_core.infrastructure.logging.logger import logger
from bedrock_core.providers.base import MessageNormalizer
from bedrock_core.providers.credentials import CredentialManager
from bedrock_core.providers.normalizer import AnthropicMessagesNormalizer
from bedrock_core.providers.registry import BEDROCK_CONFIG, resolve_model_id

REQUEST_ID_HEADER = "x-amzn-RequestId"
ERROR_TYPE_HEADER = "x-amzn-ErrorType"


class FrameStream:
    """流式调用句柄：逐个产出事件帧。

    连接在迭代耗尽、出错或 close() 时释放；
    还没开始迭代就 close() 也会释放（例如客户端提前断开）。
    """

    def __init__(self, client: httpx.Client, resp: httpx.Response, request_id: Optional[str]):
        self._client = client
        self._resp = resp
        self.request_id = request_id
        self._count = 0
        self._released = False
        self._frames = self._iter_frames()

    def __iter__(self) -> "FrameStream":
        return self

    def __next__(self) -> StreamEventFrame:
        return next(self._frames)

    def __enter__(self) -> "FrameStream":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False

    def close(self) -> None:
        self._frames.close()
        self._release()

    @property
    def closed(self) -> bool:
        return self._released

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._resp.close()
        finally:
            self._client.close()
        logger.info("bedrock.stream.closed", extra={"extra": {"request_id": self.request_id, "frames": self._count}})

    def _iter_frames(self) -> Iterator[StreamEventFrame]:
        buffer = EventStreamBuffer()
        try:
            for data in self._resp.iter_bytes():
                buffer.add_data(data)
                for message in buffer:
                    frame = StreamEventFrame(payload=message.payload, headers=dict(message.headers))
                    if frame.message_type != "event":
                        raise self._exception_from(frame)
                    self._count += 1
                    yield frame
        except httpx.HTTPError as e:
            logger.error(
                "bedrock.stream.transport_error",
                extra={"extra": {"request_id": self.request_id, "frames": self._count, "error": str(e)}},
            )
            raise StreamTransportError(f"Stream interrupted: {e}", request_id=self.request_id) from e
        except ParserError as e:
            logger.error(
                "bedrock.stream.framing_error",
                extra={"extra": {"request_id": self.request_id, "frames": self._count, "error": str(e)}},
            )
            raise StreamTransportError(f"Corrupt event stream: {e}", request_id=self.request_id) from e
        finally:
            self._release()

    def _exception_from(self, frame: StreamEventFrame) -> StreamTransportError:
        error_type = frame.headers.get(":exception-type") or frame.headers.get(":error-code")
        try:
            message = json.loads(frame.payload.decode("utf-8")).get("message")
        except (UnicodeDecodeError, ValueError, AttributeError):
            message = None
        logger.error(
            "bedrock.stream.exception_frame",
            extra={"extra": {"request_id": self.request_id, "error_type": error_type}},
        )
        return StreamTransportError(
            message or f"Stream error: {error_type}",
            request_id=self.request_id,
            error_type=error_type,
        )


class BedrockClient:
    """Bedrock runtime 客户端实现。

    - name: Provider 名称（供日志/调试使用）。
    - invoke: 非流式调用，返回回复文本。
    - invoke_stream: 流式调用，返回事件帧迭代器。
    """

    name = "bedrock"

    def __init__(
        self,
        credentials: CredentialManager,
        cfg=settings,
        normalizer: Optional[MessageNormalizer] = None,
    ):
        self._credentials = credentials
        self._settings = cfg
        self._normalizer = normalizer or AnthropicMessagesNormalizer()
        self._region = cfg.aws_region
        self._model_id = resolve_model_id(cfg.bedrock_model)
        self._endpoint = BEDROCK_CONFIG.endpoint_for(cfg.aws_region, getattr(cfg, "bedrock_endpoint_url", None))
        logger.info(
            "bedrock.client.created",
            extra={"extra": {"region": self._region, "model_id": self._model_id, "endpoint": self._endpoint}},
        )

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def credentials(self) -> CredentialManager:
        return self._credentials

    # ---- 非流式 ----

    def invoke(self, req: NormalizedRequest) -> str:
        body = self._prepare(req, stream=False)
        url = self._url("invoke")
        headers = self._signed_headers(url, body, {"Content-Type": "application/json", "Accept": "application/json"})
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.post(url, content=body, headers=headers)
        except httpx.RequestError as e:
            logger.error("bedrock.invoke.network_error", extra={"extra": {"error": str(e)}})
            raise UpstreamError(f"Bedrock request failed: {e}") from e
        request_id = resp.headers.get(REQUEST_ID_HEADER)
        if resp.status_code >= 400:
            raise self._upstream_error(resp.status_code, request_id, resp.text, resp.headers.get(ERROR_TYPE_HEADER))
        try:
            data = resp.json()
        except ValueError as e:
            logger.error("bedrock.invoke.bad_json", extra={"extra": {"request_id": request_id}})
            raise UnexpectedResponseShape("Bedrock response is not valid JSON", raw=resp.text) from e
        try:
            text = self._normalizer.extract_reply(data)
        except UnexpectedResponseShape:
            logger.error(
                "bedrock.invoke.unexpected_shape",
                extra={"extra": {"request_id": request_id, "shape": _shape(data)}},
            )
            raise
        logger.info(
            "bedrock.invoke.success",
            extra={"extra": {"request_id": request_id, "stop_reason": data.get("stop_reason")}},
        )
        return text

    # ---- 流式 ----

    def invoke_stream(self, req: NormalizedRequest) -> FrameStream:
        """发起流式调用。

        初始请求的错误（网络、4xx/5xx）在这里立即抛出；
        返回的 FrameStream 在耗尽、出错或被 close() 时释放连接。
        """

        body = self._prepare(req, stream=True)
        url = self._url("invoke-with-response-stream")
        headers = self._signed_headers(
            url,
            body,
            {
                "Content-Type": "application/json",
                "Accept": "application/vnd.amazon.eventstream",
                "X-Amzn-Bedrock-Accept": "application/json",
            },
        )
        client = httpx.Client(timeout=self._settings.http_timeout, trust_env=False)
        try:
            request = client.build_request("POST", url, content=body, headers=headers)
            resp = client.send(request, stream=True)
        except httpx.RequestError as e:
            client.close()
            logger.error("bedrock.stream.network_error", extra={"extra": {"error": str(e)}})
            raise UpstreamError(f"Bedrock request failed: {e}") from e
        request_id = resp.headers.get(REQUEST_ID_HEADER)
        if resp.status_code >= 400:
            try:
                resp.read()
                text = resp.text
            finally:
                resp.close()
                client.close()
            raise self._upstream_error(resp.status_code, request_id, text, resp.headers.get(ERROR_TYPE_HEADER))
        logger.info("bedrock.stream.open", extra={"extra": {"request_id": request_id}})
        return FrameStream(client, resp, request_id)

    # ---- 辅助方法 ----

    def _prepare(self, req: NormalizedRequest, stream: bool) -> bytes:
        self._credentials.ensure_ready()
        self._credentials.refresh_if_needed(False)
        if not req.turns:
            raise EmptyConversation()
        body = self._normalizer.to_wire(req)
        logger.info(
            "bedrock.request",
            extra={"extra": {
                "model_id": self._model_id,
                "stream": stream,
                "turns": len(req.turns),
                "has_system": bool(req.system_instruction),
            }},
        )
        return json.dumps(body, ensure_ascii=False).encode("utf-8")

    def _url(self, action: str) -> str:
        return f"{self._endpoint}/model/{quote(self._model_id, safe='')}/{action}"

    def _signed_headers(self, url: str, body: bytes, headers: Dict[str, str]) -> Dict[str, str]:
        aws_req = AWSRequest(method="POST", url=url, data=body, headers=dict(headers))
        SigV4Auth(self._credentials.current_credentials(), BEDROCK_CONFIG.signing_service, self._region).add_auth(aws_req)
        return dict(aws_req.headers.items())

    @staticmethod
    def _upstream_error(status: int, request_id: Optional[str], text: str, error_type: Optional[str]) -> UpstreamError:
        message = text
        try:
            payload = json.loads(text)
            if isinstance(payload, dict):
                message = payload.get("message") or payload.get("Message") or text
        except ValueError:
            pass
        logger.error(
            "bedrock.upstream_error",
            extra={"extra": {"status_code": status, "request_id": request_id, "error_type": error_type}},
        )
        return UpstreamError(message or f"HTTP {status}", status_code=status, request_id=request_id, error_type=error_type)


def _shape(data: Any) -> Any:
    """只记录结构（键名与类型），不记录内容。"""

    if isinstance(data, dict):
        return {k: _shape(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_shape(v) for v in data[:3]]
    return type(data).__name__
