import logging
import re

from vm_orchestrator.config import get_settings


LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
_SECRET_PATTERN = re.compile(
    r"(?i)\b(password|passwd|admin_password|adminPassword|api_key|client_secret)"
    r"(['\"]?\s*[=:]\s*['\"]?)[^\s'\",}]+"
)


class SecretMaskingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _SECRET_PATTERN.sub(r"\1\2***", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging() -> None:
    settings = get_settings()
    root = logging.getLogger()
    for handler in root.handlers:
        if getattr(handler, "_vm_orchestrator", False):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SecretMaskingFilter())
    handler._vm_orchestrator = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    logging.getLogger("azure").setLevel(logging.WARNING)
