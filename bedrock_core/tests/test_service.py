import base64
import json

import pytest

from bedrock_core.api.service import ChatService, create_chat_service
from bedrock_core.domain.exceptions import StreamTransportError, ValidationError
from bedrock_core.domain.models import ChatTurn, Delegated, StreamEventFrame
from bedrock_core.providers.bedrock_client import BedrockClient


class SettingsStub:
    aws_region = "us-east-1"
    cross_account_role_arn = None
    bedrock_model = "chat"
    bedrock_endpoint_url = None
    system_prompt = "You are a helpful AI assistant."
    max_tokens = 1024
    temperature = 0.7
    http_timeout = 1.0
    sts_session_name = "test"
    assume_role_duration_seconds = 3600
    credential_refresh_margin_seconds = 300
    verify_assumed_identity = False


def _delta(text):
    event = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}
    inner = base64.b64encode(json.dumps(event).encode()).decode()
    return StreamEventFrame(payload=json.dumps({"bytes": inner}).encode(), headers={":event-type": "chunk"})


class StubClient:
    """记录收到的请求，返回预置回复。"""

    def __init__(self, reply="Hello", frames=None):
        self.reply = reply
        self.frames = frames or []
        self.requests = []

    def invoke(self, req):
        self.requests.append(req)
        return self.reply

    def invoke_stream(self, req):
        self.requests.append(req)

        def gen():
            for frame in self.frames:
                if isinstance(frame, Exception):
                    raise frame
                yield frame

        return gen()


class StubBroker:
    def who_am_i(self, credential=None):
        return None


def test_generate_response_end_to_end():
    client = StubClient(reply="Hello")
    service = ChatService(client, StubBroker(), cfg=SettingsStub())
    reply = service.generate_response([ChatTurn("system", "Be terse"), ChatTurn("user", "Hi")])
    assert reply == "Hello"
    req = client.requests[0]
    assert req.system_instruction == "Be terse"
    assert [(t.role, t.content[0].text) for t in req.turns] == [("user", "Hi")]
    assert req.max_output_tokens == 1024


def test_default_system_prompt_applied():
    client = StubClient()
    ChatService(client, StubBroker(), cfg=SettingsStub()).generate_response([{"role": "user", "content": "Hi"}])
    assert client.requests[0].system_instruction == "You are a helpful AI assistant."


def test_streaming_delivers_deltas_in_order():
    client = StubClient(frames=[_delta("Hel"), _delta("lo"), _delta("!")])
    service = ChatService(client, StubBroker(), cfg=SettingsStub())
    received = []
    full = service.generate_streaming_response([ChatTurn("user", "Hi")], received.append)
    assert received == ["Hel", "lo", "!"]
    assert "".join(received) == full == "Hello!"


def test_streaming_failure_keeps_delivered_deltas():
    client = StubClient(frames=[_delta("par"), _delta("tial"), StreamTransportError("reset")])
    service = ChatService(client, StubBroker(), cfg=SettingsStub())
    received = []
    with pytest.raises(StreamTransportError):
        service.generate_streaming_response([ChatTurn("user", "Hi")], received.append)
    assert received == ["par", "tial"]


def test_stream_response_is_lazy():
    client = StubClient(frames=[_delta("a"), _delta("b")])
    deltas = ChatService(client, StubBroker(), cfg=SettingsStub()).stream_response([ChatTurn("user", "Hi")])
    assert next(deltas) == "a"
    assert list(deltas) == ["b"]


def test_create_chat_service_wires_delegated_mode():
    cfg = SettingsStub()
    cfg.cross_account_role_arn = "arn:aws:iam::444455556666:role/BedrockRole"
    service = create_chat_service(cfg)
    client = service._client
    assert isinstance(client, BedrockClient)
    assert client.credentials.mode == Delegated("arn:aws:iam::444455556666:role/BedrockRole")
    assert not client.credentials.is_ready


def test_create_chat_service_requires_model():
    cfg = SettingsStub()
    cfg.bedrock_model = ""
    with pytest.raises(ValidationError) as exc:
        create_chat_service(cfg)
    assert exc.value.code == "MISSING_CONFIG"


class ClosableFrames:
    def __init__(self, frames):
        self._it = iter(frames)
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._it)

    def close(self):
        self.closed = True


def test_stream_response_close_before_first_delta_releases_stream():
    source = ClosableFrames([_delta("a")])

    class Client(StubClient):
        def invoke_stream(self, req):
            return source

    deltas = ChatService(Client(), StubBroker(), cfg=SettingsStub()).stream_response([ChatTurn("user", "Hi")])
    deltas.close()
    assert source.closed


def test_streaming_response_closes_stream_on_sink_error():
    source = ClosableFrames([_delta("a"), _delta("b")])

    class Client(StubClient):
        def invoke_stream(self, req):
            return source

    def sink(text):
        raise RuntimeError("client went away")

    with pytest.raises(RuntimeError):
        ChatService(Client(), StubBroker(), cfg=SettingsStub()).generate_streaming_response(
            [ChatTurn("user", "Hi")], sink
        )
    assert source.closed
