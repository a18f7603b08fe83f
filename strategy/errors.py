class SignalError(Exception):
    """Base class for recoverable signal-pipeline failures."""


class InsufficientDataError(SignalError):
    pass


class InvalidCandleError(SignalError):
    def __init__(self, message: str, index: int = -1):
        self.index = index
        super().__init__(message)


class InvalidLevelsError(SignalError):
    pass


class DuplicateMonitorError(SignalError):
    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"Active monitor already exists for {symbol}")


class ComputationTimeout(SignalError):
    pass
