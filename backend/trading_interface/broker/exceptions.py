class BrokerException(Exception):
    """Base exception for all trading interface errors."""
    retryable = False


class RateLimitError(BrokerException):
    """Trigger exponential backoff due to 429."""
    retryable = True


class NetworkError(BrokerException):
    """Retryable network failures (HTTP 5xx, connection resets)."""
    retryable = True


class BrokerTimeoutError(NetworkError):
    """Request timed out; the order may or may not have reached the broker."""
    pass


class OrderRejectedError(BrokerException):
    """Non-Retryable 4xx business rejection."""
    pass


class InsufficientFundsError(OrderRejectedError):
    """Non-Retryable HTTP 403 insufficient buying power."""
    pass


class InvalidTickerError(OrderRejectedError):
    """Non-Retryable asset resolution failure."""
    pass


class MarketClosedError(OrderRejectedError):
    """Attempted execution outside hours without explicit extended configuration."""
    pass


class UnauthorizedError(BrokerException):
    """Invalid API Keys / Security Rotation Failures."""
    pass
