class SimulatorError(Exception):
    """Base class for simulator errors."""


class NotConnectedError(SimulatorError, ConnectionError):
    """Raised when a frame is sent while no session is open."""


class ReconnectAttemptsExhausted(SimulatorError):
    """The reconnection budget is spent; the engine gives up."""

    def __init__(self, attempts: int):
        super().__init__(f"gave up after {attempts} reconnection attempts")
        self.attempts = attempts
