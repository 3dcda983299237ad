"""Job protocol messages: request parsing, result/feedback building, encryption."""

from .messages import MessageBuilder, SignedMessage, compute_message_id, result_kind_for
from .parsing import coerce_message, parse_job_request

__all__ = [
    "MessageBuilder",
    "SignedMessage",
    "coerce_message",
    "compute_message_id",
    "parse_job_request",
    "result_kind_for",
]
