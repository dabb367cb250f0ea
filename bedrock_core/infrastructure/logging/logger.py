import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict
from bedrock_core.config.settings import settings

# 字段名（或以 _<名> 结尾）命中这些时，值一律打码
SECRET_FIELDS = ("secret", "secret_key", "token", "session_token", "password", "authorization", "signature")


def _is_secret(key: str) -> bool:
    k = key.lower().replace("-", "_")
    return any(k == s or k.endswith("_" + s) for s in SECRET_FIELDS)


def mask_secrets(fields: Dict[str, Any]) -> Dict[str, Any]:
    masked = {}
    for key, value in fields.items():
        if isinstance(value, dict):
            masked[key] = mask_secrets(value)
        elif _is_secret(str(key)) and value:
            masked[key] = "***"
        else:
            masked[key] = value
    return masked


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if settings.log_redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(mask_secrets(extra))
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("bedrock_core")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "bedrock.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()
