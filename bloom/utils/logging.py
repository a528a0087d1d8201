# bloom/utils/logging.py
import logging
import re

#13-19 digit run = possible PAN
_CARD_NUMBER = re.compile(r"\b\d{13,19}\b")


class RedactCardNumbers(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        if _CARD_NUMBER.search(message):
            record.msg = _CARD_NUMBER.sub("[REDACTED]", message)
            record.args = None
        return True


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        )
        handler.addFilter(RedactCardNumbers())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger
