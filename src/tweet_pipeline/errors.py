"""
Exception taxonomy for the tweet pipeline.

Only validation errors surface to callers of ``submit``; broker errors are
absorbed by the retry/reconnect machinery and end in dead-letter records.
"""


class PipelineError(Exception):
    """Base error for the pipeline."""

    pass


class EventValidationError(PipelineError, ValueError):
    """Malformed Event rejected at submit. Never retried."""

    pass


class ConnError(PipelineError):
    """Broker unreachable or connection lost. Triggers the reconnect loop."""

    pass


class PublishError(PipelineError):
    """Transient publish failure, retried per the delivery policy."""

    pass


class CapacityExceededError(PipelineError):
    """Ingress buffer overflow. The oldest slot was evicted; not fatal."""

    def __init__(self, capacity: int, evicted_id: str):
        super().__init__(f"ingress buffer full (capacity={capacity}), evicted {evicted_id}")
        self.capacity = capacity
        self.evicted_id = evicted_id


def map_broker_error(e: Exception) -> PipelineError:
    import redis.exceptions as E

    if isinstance(e, PipelineError):
        return e
    # builtin TimeoutError is an OSError, so check it before connection errors
    if isinstance(e, (E.TimeoutError, TimeoutError)):
        return PublishError(f"timeout: {e}")
    if isinstance(e, (E.ConnectionError, ConnectionError, OSError)):
        return ConnError(str(e) or type(e).__name__)
    if isinstance(e, E.RedisError):
        return PublishError(str(e))
    return PublishError(f"{type(e).__name__}: {e}")
