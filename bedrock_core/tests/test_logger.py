import json
import logging

from bedrock_core.infrastructure.logging.logger import JsonFormatter, mask_secrets


def _record(extra):
    record = logging.LogRecord("bedrock_core", logging.INFO, __file__, 1, "sts.assume_role.success", None, None)
    record.extra = extra
    return record


def test_secret_fields_are_masked():
    line = JsonFormatter().format(_record({
        "session_token": "FwoGZXIvYXdzE",
        "secret_key": "wJalrXUtnFEMI",
        "Authorization": "AWS4-HMAC-SHA256 Credential=...",
        "access_key": "ASIA***",
        "max_tokens": 1024,
        "role_arn": "arn:aws:iam::444455556666:role/BedrockRole",
    }))
    payload = json.loads(line)
    assert payload["session_token"] == "***"
    assert payload["secret_key"] == "***"
    assert payload["Authorization"] == "***"
    assert payload["access_key"] == "ASIA***"
    assert payload["max_tokens"] == 1024
    assert payload["role_arn"].endswith("BedrockRole")
    assert payload["msg"] == "sts.assume_role.success"


def test_nested_and_empty_values():
    masked = mask_secrets({"headers": {"x-amz-security-token": "abc", "X-Amz-Date": "20240101"}, "token": None})
    assert masked["headers"]["x-amz-security-token"] == "***"
    assert masked["headers"]["X-Amz-Date"] == "20240101"
    assert masked["token"] is None
