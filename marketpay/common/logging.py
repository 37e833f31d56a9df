"""JSON logging; every record carries the trace, payment and order it belongs to."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from marketpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")


def bind_payment(payment) -> None:
    """Attach a payment's ids to all log lines of the current task."""

    payment_id_ctx.set(payment.id)
    order_id_ctx.set(payment.order_id)


class PaymentContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.payment_id = payment_id_ctx.get()
        record.order_id = order_id_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    """Send JSON lines to stdout; call once at process start."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(PaymentContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(payment_id)s %(order_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    # Provider payloads are logged by the adapters; httpx request lines are noise.
    logging.getLogger("httpx").setLevel(logging.WARNING)


logger = logging.getLogger("marketpay")
