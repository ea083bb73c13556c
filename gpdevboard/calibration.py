"""
Oscillator calibration and board bring-up sequences.

Everything here composes GPDevBoard operations; nothing touches the transport
directly.
"""

import logging
from typing import Optional, Union

import numpy as np

from .bitstream import read_bitstream, tweak_bitstream, verify_device_present
from .board import (SIGNAL_TEST_POINTS, TP_GND, TP_VDD, GPDevBoard, IOConfig,
                    SiggenCommand, open_board)
from .errors import (BoardFault, BringUpError, CalibrationDidNotConverge,
                     DeviceNotFound, GPDevBoardError)
from .parts import Part, bitstream_bytes, part_name
from .transport import SILEGO_VID, BusyRetryPolicy, UsbSession

logger = logging.getLogger(__name__)

VDD_CHANNEL = 1

FTW_MIN = 0
FTW_MAX = 0xff
FTW_START = 128

DEFAULT_TOLERANCE = 50
DEFAULT_MAX_ITERATIONS = 16
DEFAULT_SAMPLES = 3


def power_up(board: GPDevBoard, voltage: float):
    """Drive Vdd of the socket from signal generator 1."""
    board.configure_siggen(VDD_CHANNEL, voltage)
    board.control_siggen(VDD_CHANNEL, SiggenCommand.START)


def measure_frequency(board: GPDevBoard, samples: int = DEFAULT_SAMPLES) -> float:
    """Median of several oscillator measurements, in Hz."""
    return float(np.median([board.measure_oscillator_frequency() for _ in range(samples)]))


def _next_candidate(lo: int, hi: int, measured: dict, target: float) -> int:
    # Interpolate between the measured words just outside [lo, hi]; bisect
    # until both ends of the bracket have been measured
    below, above = lo - 1, hi + 1
    if below in measured and above in measured and measured[below] < measured[above]:
        ftw = np.interp(target, [measured[below], measured[above]], [below, above])
        return int(min(max(round(float(ftw)), lo), hi))
    return (lo + hi) // 2


def trim_oscillator(board: GPDevBoard, part: Part, voltage: float, freq: int,
                    tolerance: float = DEFAULT_TOLERANCE,
                    max_iterations: int = DEFAULT_MAX_ITERATIONS,
                    trim_bitstream: Optional[bytes] = None,
                    samples: int = DEFAULT_SAMPLES) -> int:
    """
    Find the tuning word that puts the RC oscillator on `freq`.

    The oscillator frequency rises monotonically with the tuning word, so the
    search keeps a bracket of untried words and narrows it after every
    measurement.

    Args:
        board: Open dev board with the part in the socket
        part: Part being trimmed
        voltage: Vdd to trim at, in volts
        freq: Target frequency in Hz
        tolerance: Acceptance band around `freq`, in Hz
        max_iterations: Give up after this many measurements
        trim_bitstream: Image routing the oscillator to the measurement pin,
            loaded into SRAM first if given
        samples: Measurements per tuning word

    Returns:
        Tuning word
    """
    logger.info("Trimming oscillator for %d Hz at Vdd=%.3g V", freq, voltage)
    board.set_part(part)
    power_up(board, voltage)
    if trim_bitstream is not None:
        board.upload_bitstream(bitstream_bytes(part), trim_bitstream)

    lo, hi = FTW_MIN, FTW_MAX
    measured = {}
    best_ftw, best_freq = FTW_START, float('nan')
    ftw = FTW_START
    iterations = 0
    while iterations < max_iterations:
        iterations += 1
        board.trim_oscillator(ftw)
        actual = measure_frequency(board, samples)
        measured[ftw] = actual
        logger.debug("ftw=%d: %.0f Hz", ftw, actual)

        if np.isnan(best_freq) or abs(actual - freq) < abs(best_freq - freq):
            best_ftw, best_freq = ftw, actual
        if abs(actual - freq) <= tolerance:
            logger.info("Oscillator trimmed: ftw=%d (%.0f Hz)", ftw, actual)
            return ftw

        if actual < freq:
            lo = ftw + 1
        else:
            hi = ftw - 1
        if lo > hi:
            break
        ftw = _next_candidate(lo, hi, measured, freq)

    raise CalibrationDidNotConverge(freq, best_ftw, best_freq, iterations)


def socket_test(board: GPDevBoard, voltage: float = 3.3) -> bool:
    """
    Check that every signal pin of the socket can be driven both ways.

    Returns:
        True if all pins followed their driver
    """
    power_up(board, voltage)
    ok = True
    for pin in SIGNAL_TEST_POINTS:
        for driver, expect_high in ((TP_VDD, True), (TP_GND, False)):
            config = IOConfig()
            config.driver_configs[pin] = driver
            board.set_io_config(config)
            value = board.single_read_adc(pin)
            high = value > voltage / 2
            if high != expect_high:
                logger.warning("Pin %d reads %.3f V, expected %s", pin, value,
                               "high" if expect_high else "low")
                ok = False
    board.set_io_config(IOConfig())
    return ok


def _stage(board: GPDevBoard, name: str, fn, *args):
    logger.info("Bring-up: %s", name)
    try:
        return fn(*args)
    except (GPDevBoardError, ValueError, OSError) as e:
        logger.error("Bring-up failed at %s: %s", name, e)
        board.close()
        raise BringUpError(name, e) from e


def _reset(board: GPDevBoard):
    board.reset()
    board.reset_all_siggens()
    board.set_status_led(True)


def _check_status(board: GPDevBoard):
    if not board.check_status():
        raise BoardFault("Board reports a fault condition")


def test_setup(board: GPDevBoard, bitstream_path, rc_osc_freq: int, voltage: float,
               target_part: Part, trim_bitstream: Optional[bytes] = None,
               pattern_id: int = 0, read_protect: bool = False) -> int:
    """
    Bring a board up for a functional test of `target_part`.

    Aborts at the first failing stage with BringUpError and leaves the board
    closed.

    Args:
        board: Open dev board
        bitstream_path: GreenPAK text bitstream to load into SRAM
        rc_osc_freq: Oscillator frequency to trim to; 0 skips trimming
        voltage: Vdd for the test, in volts
        target_part: Part expected in the socket

    Returns:
        Oscillator tuning word written into the bitstream
    """
    _stage(board, "reset", _reset, board)
    _stage(board, "set part", board.set_part, target_part)
    _stage(board, "verify device present", verify_device_present, board, target_part)

    # Trim before the upload: the tuning word is patched into the design, and
    # the trim image would overwrite it in SRAM
    ftw = 0
    if rc_osc_freq:
        ftw = _stage(board, "trim oscillator", trim_oscillator, board, target_part,
                     voltage, rc_osc_freq, DEFAULT_TOLERANCE, DEFAULT_MAX_ITERATIONS,
                     trim_bitstream)

    bitstream = bytearray(_stage(board, "load bitstream", read_bitstream,
                                 bitstream_path, target_part))
    _stage(board, "patch bitstream", tweak_bitstream, bitstream, target_part,
           ftw, pattern_id, read_protect)
    _stage(board, "upload bitstream", board.upload_bitstream, len(bitstream), bitstream)
    _stage(board, "power up", power_up, board, voltage)
    _stage(board, "check status", _check_status, board)
    logger.info("%s ready (ftw=%d)", part_name(target_part), ftw)
    return ftw


def _board_indexes(session: UsbSession, selector: Union[int, str, None]):
    if selector is None:
        return list(range(len(session.find_devices(SILEGO_VID))))
    if isinstance(selector, int):
        return [selector]
    return [session.index_of_serial(SILEGO_VID, selector)]


def multi_board_test_setup(bitstream_path, rc_osc_freq: int, voltage: float,
                           target_part: Part, selector: Union[int, str, None] = None,
                           session: Optional[UsbSession] = None,
                           retry: Optional[BusyRetryPolicy] = None,
                           **kwargs) -> GPDevBoard:
    """
    Open the board chosen by `selector` and run test_setup() on it.

    Args:
        selector: Board index, USB serial number, or None to try every
            attached board until one has `target_part` in its socket

    Returns:
        Open, configured GPDevBoard (owning the session if one was created)
    """
    owned = session is None
    if owned:
        session = UsbSession().__enter__()
    last_error = None
    try:
        for index in _board_indexes(session, selector):
            logger.info("Bring-up: open board %d", index)
            try:
                board = open_board(index, session, retry)
            except GPDevBoardError as e:
                error = BringUpError("open", e)
                if selector is not None:
                    raise error from e
                logger.warning("Board %d: %s", index, error)
                last_error = error
                continue
            try:
                test_setup(board, bitstream_path, rc_osc_freq, voltage, target_part, **kwargs)
            except BringUpError as e:
                if selector is not None:
                    raise
                logger.warning("Board %d: %s", index, e)
                last_error = e
                continue
            if owned:
                board.own_session(session)
            return board
    except BaseException:
        if owned:
            session.close()
        raise

    if owned:
        session.close()
    raise DeviceNotFound(
        f"No dev board with a working {part_name(target_part)} found") from last_error
