"""Custom exceptions for cost usage scanning failures."""


class CostUsageError(Exception):
    """Base exception for cost usage scanning errors."""


class FileAccessError(CostUsageError):
    """Raised when a session file cannot be stat'ed or read."""


class CacheDecodeError(CostUsageError):
    """Raised when a persisted scan cache cannot be decoded."""


class UnsupportedCacheVersionError(CacheDecodeError):
    """Raised when a persisted scan cache carries an unknown schema version."""


class InvalidDayKeyError(CostUsageError, ValueError):
    """Raised when a day key is not in `YYYY-MM-DD` form."""


class InvalidLabelError(CostUsageError, ValueError):
    """Raised when a context label or model name is empty after trimming."""
