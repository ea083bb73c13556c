"""
gpdevboard - host library for the Silego GreenPAK development board.

Usage:
    from gpdevboard import open_board, detect_part

    with open_board(0) as board:
        part, bitstream, kind = detect_part(board)
"""

from .bitstream import (BitstreamKind, bitstream_from_hex, classify_bitstream,
                        detect_part, read_bitstream, tweak_bitstream,
                        verify_device_present)
from .board import (BoardStatus, DownloadMode, Driver, GPDevBoard, IOConfig,
                    SiggenCommand, Signal, Strength, open_board)
from .calibration import multi_board_test_setup, socket_test, trim_oscillator
from .errors import (BoardFault, BringUpError, CalibrationDidNotConverge,
                     CalibrationError, DetectionError, DeviceNotFound,
                     GPDevBoardError, MalformedResponse, NoPartDetected,
                     ProtocolError, TransportError, TransportTimeout,
                     UnexpectedAck, WrongPartDetected)
from .parts import Part, bitstream_length, part_name
from .transport import BusyRetryPolicy, UsbSession, UsbTransport

__version__ = "0.1.0"
