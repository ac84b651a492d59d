from typing import Optional


class WaveConfluenceError(Exception):
    """Base class for errors raised by the analysis engines."""
    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class InsufficientDataError(WaveConfluenceError):
    """Raised when an operation needs more candles than it was given."""
    def __init__(self, operation: str, required: int, available: int):
        self.operation = operation
        self.required = required
        self.available = available
        self.shortfall = max(0, required - available)
        message = (f"Insufficient data for {operation}: need at least {required} candles, "
                   f"got {available} ({self.shortfall} short)")
        super().__init__(message)


class ConfigurationError(WaveConfluenceError, ValueError):
    """Raised for unknown sections/fields or invalid values in a configuration update."""
    pass
