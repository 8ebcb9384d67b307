"""JSON logs for checkout, tagged with the payment conversation and order.

Card data never reaches the log stream: `CardDataFilter` masks anything that
looks like a card number before a record is formatted.
"""

import logging
import re
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from storepay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
conversation_id_ctx: ContextVar[str] = ContextVar("conversation_id", default="")
order_number_ctx: ContextVar[str] = ContextVar("order_number", default="")

# 13-19 digits, optionally grouped by spaces or dashes.
PAN_PATTERN = re.compile(r"\b(?:\d[ -]?){12,18}\d\b")


def mask_card_numbers(text: str) -> str:
    """Keep only the last four digits of every card-number-like run."""

    def _mask(match: re.Match) -> str:
        digits = re.sub(r"\D", "", match.group(0))
        return f"****{digits[-4:]}"

    return PAN_PATTERN.sub(_mask, text)


class PaymentContextFilter(logging.Filter):
    """Stamp the service name and the current payment correlation ids."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.conversation_id = conversation_id_ctx.get()
        record.order_number = order_number_ctx.get()
        return True


class CardDataFilter(logging.Filter):
    """Mask card numbers in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_card_numbers(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging() -> None:
    """Send JSON records to stdout; called once at process start."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(PaymentContextFilter())
    handler.addFilter(CardDataFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s "
            "%(conversation_id)s %(order_number)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


logger = logging.getLogger("storepay.checkout")
