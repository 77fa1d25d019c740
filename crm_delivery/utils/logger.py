import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("crm_delivery")


_SECRET_XML_TAGS = ("pwd", "password", "login", "apikey", "api_key")
_SECRET_XML_RE = re.compile(
    r"<(?P<tag>%s)>(?P<value>.*?)</(?P=tag)>" % "|".join(_SECRET_XML_TAGS),
    re.IGNORECASE | re.DOTALL,
)

_MAX_BODY_CHARS = 4000


class CourierExchangeLogger:
    """Keeps the last N courier request/response pairs for postmortem debugging.

    Courier APIs are undocumented and drift, so every exchange is kept with the
    adapter name, timings and the raw body the adapter saw.
    """

    def __init__(self):
        self.logs = []
        self.max_logs = 1000

    def log_exchange(
        self,
        adapter: str,
        action: str,
        request_data: Optional[Dict[str, Any]] = None,
        response_status: Optional[int] = None,
        response_body: Optional[str] = None,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
    ):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "adapter": adapter,
            "action": action,
            "request_data": self._sanitize_credentials(request_data) if request_data else None,
            "response_status": response_status,
            "response_body": self._truncate(self._mask_xml(response_body)) if response_body else None,
            "duration_ms": duration_ms,
            "error": error,
        }

        self.logs.append(log_entry)

        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{adapter}] {action} status={response_status} duration_ms={duration_ms}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}

        sanitized = data.copy()
        sensitive_keys = [
            "pwd", "password", "login", "api_key", "apiKey",
            "authorization", "access_token", "token",
        ]

        for key in sensitive_keys:
            if key in sanitized and sanitized[key] is not None:
                value = str(sanitized[key])
                if len(value) > 8:
                    sanitized[key] = f"{value[:2]}...{value[-2:]}"
                else:
                    sanitized[key] = "***"

        headers = sanitized.get("headers")
        if isinstance(headers, dict):
            sanitized["headers"] = mask_headers(headers)

        body = sanitized.get("body")
        if isinstance(body, str):
            sanitized["body"] = self._truncate(self._mask_xml(body))

        return sanitized

    def _mask_xml(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        return _SECRET_XML_RE.sub(lambda m: f"<{m.group('tag')}>***</{m.group('tag')}>", text)

    def _truncate(self, text: Optional[str]) -> Optional[str]:
        if text is None or len(text) <= _MAX_BODY_CHARS:
            return text
        return text[:_MAX_BODY_CHARS] + "...(truncated)"

    def get_logs(self, limit: Optional[int] = None, adapter: Optional[str] = None) -> list:
        logs = self.logs
        if adapter:
            logs = [entry for entry in logs if entry["adapter"] == adapter]
        if limit:
            return logs[-limit:]
        return logs

    def clear_logs(self):
        self.logs = []
        logger.info("Cleared courier exchange logs")


def mask_headers(headers: Dict[str, Any]) -> Dict[str, Any]:
    masked: Dict[str, Any] = {}
    for k, v in (headers or {}).items():
        lk = str(k).lower()
        if lk in {"authorization", "x-api-key"} or "token" in lk:
            masked[k] = "***"
        else:
            masked[k] = v
    return masked


courier_logger = CourierExchangeLogger()
