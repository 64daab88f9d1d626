import logging
import re
import sys


# Google OAuth access token / GitHub token 패턴
_TOKEN_PATTERN = re.compile(r"(ya29\.[0-9A-Za-z_\-\.]+|gh[pousr]_[0-9A-Za-z]{20,})")


class _TokenRedactingFilter(logging.Filter):
    """
    로그 메시지에 토큰이 섞여 들어가도 그대로 출력되지 않도록 마스킹한다.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _TOKEN_PATTERN.sub("***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(verbosity: int = 0) -> None:
    level = logging.INFO
    if verbosity >= 1:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, _TokenRedactingFilter) for f in handler.filters):
            handler.addFilter(_TokenRedactingFilter())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
