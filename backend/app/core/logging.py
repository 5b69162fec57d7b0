import logging
import sys
import json
from datetime import datetime, timezone

# 構造化データから除去するキー (カードトークン・署名)
REDACTED_KEYS = frozenset({"token", "cardtoken", "card_token", "content-hmac", "x-content-hmac", "apisecret"})


def _redact(value):
    if isinstance(value, dict):
        return {
            k: "***" if str(k).lower() in REDACTED_KEYS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


class JSONFormatter(logging.Formatter):
    """構造化JSONログフォーマッター"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # logger.info(..., extra={"extra_data": {...}})
        if hasattr(record, "extra_data"):
            log_entry["data"] = _redact(record.extra_data)
        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(debug: bool = False):
    """ロギング設定を初期化 (stdoutへJSON 1行/レコード)"""
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # 外部ライブラリの過剰ログを抑制
    for noisy in ("sqlalchemy.engine", "httpx", "httpcore", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
