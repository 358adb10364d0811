import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger("nai_chat")

_HANDLER_NAME = "nai_chat.jsonl"


class JsonFormatter(logging.Formatter):
    def __init__(self, redact_content: bool = False):
        super().__init__()
        self._redact_content = redact_content

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self._redact_content:
            msg = (msg or "")[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        return json.dumps(payload, ensure_ascii=False)


def setup_logger(config: Optional[Any] = None, level: int = logging.INFO) -> logging.Logger:
    """给 nai_chat logger 挂上 JSON 行文件输出。重复调用不会重复添加 handler。"""

    log_dir = Path(getattr(config, "log_dir", "logs"))
    redact = bool(getattr(config, "log_redact_content", False))
    logger.setLevel(level)
    for handler in logger.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return logger
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "nai_chat.log", encoding="utf-8")
    fh.set_name(_HANDLER_NAME)
    fh.setLevel(level)
    fh.setFormatter(JsonFormatter(redact_content=redact))
    logger.addHandler(fh)
    return logger


def log_event(level: int, message: str, log_ctx: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
    payload = dict(log_ctx or {})
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
