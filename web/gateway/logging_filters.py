"""Logging filters for enriching log records with request context.

Adding ``RequestIdFilter`` to a handler gives every record a
``request_id`` and a ``user_id`` taken from the ContextVars set by the
gateway middleware, so checkout logs can be correlated per request and
per shopper without touching individual log statements.
"""

from logging import Filter, LogRecord

from .middleware import REQUEST_ID_CTX, USER_ID_CTX


class RequestIdFilter(Filter):
    """Attach ``request_id`` and ``user_id`` attributes to log records.

    Outside a request both default to a hyphen ("-") so formatters can
    always reference them.
    """

    def filter(self, record: LogRecord) -> bool:
        record.request_id = REQUEST_ID_CTX.get()
        if not hasattr(record, "user_id"):
            record.user_id = USER_ID_CTX.get()
        return True
