import contextvars
import logging

_request_id = contextvars.ContextVar("request_id", default="-")


def bind_request_id(value: str):
    return _request_id.set(value)


def unbind_request_id(token) -> None:
    _request_id.reset(token)


class RequestIDFilter(logging.Filter):
    """Stamp every record with the id of the request being served ("-" outside requests)."""

    def filter(self, record):
        record.request_id = _request_id.get()
        return True
