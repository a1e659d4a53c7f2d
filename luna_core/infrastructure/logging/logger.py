"""JSON 行日志。

所有模块共用名为 luna_core 的 logger，写入 <log_dir>/luna.log，每行一个 JSON 对象。
调用方通过 extra={"extra": {...}} 附加结构化字段（trace_id、chat_id、code 等）。
开启 log_redact_content 后截断消息正文，并隐藏可能包含用户内容的字段。
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from luna_core.config.settings import settings

# 可能带有用户输入或模型输出的字段
CONTENT_FIELDS = ("prompt", "text", "title", "label")
REDACTED = "[redacted]"


class JsonFormatter(logging.Formatter):
    def __init__(self, redact: bool = False):
        super().__init__()
        self.redact = redact

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if self.redact:
            msg = (msg or "")[:64]
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key, value in extra.items():
                payload[key] = REDACTED if self.redact and key in CONTENT_FIELDS else value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(cfg=settings) -> logging.Logger:
    logger = logging.getLogger("luna_core")
    logger.setLevel(cfg.log_level.upper())
    # 重复导入或重复调用时不再叠加 handler
    for handler in logger.handlers:
        if isinstance(handler.formatter, JsonFormatter):
            return logger
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "luna.log", encoding="utf-8")
    fh.setFormatter(JsonFormatter(redact=cfg.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()
