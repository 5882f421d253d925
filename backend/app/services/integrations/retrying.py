"""
Retry policy shared by the collaborator clients.
"""
import httpx


def is_retryable(exc: BaseException) -> bool:
    """Timeouts, transport failures and 5xx responses get another attempt."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))
