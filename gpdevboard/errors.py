"""
Exceptions raised by the gpdevboard library.

Every failure surfaced by the library derives from GPDevBoardError so callers
can catch the whole family in one place.
"""


class GPDevBoardError(Exception):
    """Base class for all dev board errors."""
    pass


# ===== Transport =====

class TransportError(GPDevBoardError):
    """USB-layer failure (claim, configuration, I/O)."""
    pass


class DeviceNotFound(TransportError):
    """No matching board at the requested index."""
    pass


class TransportTimeout(TransportError):
    """A single interrupt transfer did not complete in time."""
    pass


# ===== Protocol =====

class ProtocolError(GPDevBoardError):
    """The board answered with something we cannot use."""
    pass


class UnexpectedAck(ProtocolError):
    """Response frame type differs from the expected acknowledgment."""

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"Unexpected ack: expected 0x{expected:02x}, got 0x{received:02x}")
        self.expected = expected
        self.received = received


class MalformedResponse(ProtocolError):
    """Short or inconsistent response packet."""
    pass


# ===== Detection =====

class DetectionError(GPDevBoardError):
    pass


class NoPartDetected(DetectionError):
    pass


class WrongPartDetected(DetectionError):

    def __init__(self, expected, detected):
        super().__init__(f"Expected {expected.name}, detected {detected.name}")
        self.expected = expected
        self.detected = detected


# ===== Calibration / bring-up =====

class CalibrationError(GPDevBoardError):
    pass


class CalibrationDidNotConverge(CalibrationError):

    def __init__(self, target: int, best_ftw: int, best_freq: float, iterations: int):
        super().__init__(
            f"Oscillator trim did not converge on {target} Hz after {iterations} "
            f"iterations (best: ftw={best_ftw} at {best_freq:.0f} Hz)")
        self.target = target
        self.best_ftw = best_ftw
        self.best_freq = best_freq
        self.iterations = iterations


class BoardFault(GPDevBoardError):
    """The board reports overcurrent or undervoltage."""
    pass


class BringUpError(GPDevBoardError):
    """A board bring-up sequence aborted at `stage`."""

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"Bring-up failed at stage '{stage}': {cause}")
        self.stage = stage
        self.cause = cause
