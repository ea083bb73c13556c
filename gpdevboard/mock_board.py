"""
GreenPAK Development Board - simulated board

Stands in for a UsbTransport: answers every packet type the firmware knows
with plausible data, so the command API, detection and calibration code can
run without hardware.

Simulated behaviour:
    - Part in the socket with an NVM image (empty by default)
    - RC oscillator whose frequency depends on the tuning word
    - ADC that follows the test point drivers and signal generator 1 (Vdd)
    - Status flags and rail voltages
    - Optional transfer timeout on the Nth send

Usage:
    python -m gpdevboard.mock_board        (loopback self-test)
"""

import collections
import logging
import struct
import sys
import types
from typing import Callable, Dict, List, Optional

from . import protocol
from .bitstream import BitstreamKind, classify_bitstream, detect_part, empty_bitstream
from .board import (NUM_TEST_POINTS, SIGNAL_TEST_POINTS, GPDevBoard, IOConfig,
                    Signal, SiggenCommand, DownloadMode)
from .errors import DeviceNotFound, TransportError, TransportTimeout
from .parts import Part, bitstream_bytes, part_name
from .protocol import DataFrame
from .transport import DEVBOARD_PID, UsbSession

logger = logging.getLogger(__name__)

DEFAULT_SUPPLY_VOLTAGE = 3.3
UNPROGRAMMED_READBACK = 0xff


def linear_oscillator(ftw: int) -> int:
    """Default oscillator model: 20 kHz at ftw=0, +40 Hz per step."""
    return 20000 + 40 * ftw


def _family(part: Optional[Part]) -> Optional[int]:
    # SLG46620V, SLG46621V and SLG4662XV share one bitstream coding
    return None if part is None else int(part) >> 4


class MockBoard:
    """Simulates one dev board behind the transport interface."""

    def __init__(self, part: Optional[Part] = Part.SLG46620V, nvm: Optional[bytes] = None,
                 oscillator: Callable[[int], int] = linear_oscillator,
                 serial_number: str = "000001",
                 supply_voltage: float = DEFAULT_SUPPLY_VOLTAGE,
                 timeout_on_send: Optional[int] = None):
        """
        Args:
            part: Part in the socket, None for an empty socket
            nvm: NVM contents of that part (erased if omitted)
            oscillator: Maps a tuning word to a frequency in Hz
            serial_number: USB serial number string
            supply_voltage: Rail voltage seen while signal generator 1 is off
            timeout_on_send: Raise TransportTimeout on this send (1-based)
        """
        self.installed_part = part
        if nvm is None and part is not None:
            nvm = empty_bitstream(part)
        self.nvm = bytearray(nvm) if nvm is not None else None
        self.sram = bytearray()
        self.oscillator = oscillator
        self.serial_number = serial_number
        self.supply_voltage = supply_voltage
        self.timeout_on_send = timeout_on_send

        # Board state
        self.selected_part = Part.UNRECOGNIZED
        self.status_led = False
        self.io_config = IOConfig()
        self.siggen_voltage: Dict[int, float] = {}
        self.siggen_running = set()
        self.adc_channel = 0
        self.ftw = 0
        self.status_flags = 0
        # Pins that read 0 V whatever drives them (bad socket contacts)
        self.stuck_pins = set()

        # Transfer state
        self.upload_buffer = bytearray()
        self.readback = b''
        self.readback_pos = 0

        # Bookkeeping for tests
        self.sends = 0
        self.sent: List[DataFrame] = []
        self.closed = False
        self._responses = collections.deque()

        self.command_handlers = {
            protocol.RESET: self._cmd_reset,
            protocol.SET_PART: self._cmd_set_part,
            protocol.SET_STATUS_LED: self._cmd_set_status_led,
            protocol.CONFIG_IO: self._cmd_config_io,
            protocol.CONFIG_SIGGEN: self._cmd_config_siggen,
            protocol.ENABLE_SIGGEN: self._cmd_enable_siggen,
            protocol.GET_STATUS: self._cmd_get_status,
            protocol.CONFIG_ADC_MUX: self._cmd_config_adc_mux,
            protocol.READ_ADC: self._cmd_read_adc,
            protocol.TRIM_OSC: self._cmd_trim_osc,
            protocol.GET_OSC_FREQ: self._cmd_get_osc_freq,
            protocol.WRITE_BITSTREAM_SRAM: self._cmd_write_sram,
            protocol.WRITE_BITSTREAM_NVRAM: self._cmd_write_nvram,
            protocol.READ_BITSTREAM_START: self._cmd_read_start,
            protocol.READ_BITSTREAM_CONT: self._cmd_read_cont,
        }

    # ===== Transport interface =====

    def send(self, data: bytes) -> int:
        if self.closed:
            raise TransportError("Device handle is closed")
        self.sends += 1
        if self.timeout_on_send is not None and self.sends >= self.timeout_on_send:
            raise TransportTimeout("Interrupt OUT transfer timed out (simulated)")
        frame = DataFrame.decode(data)
        self.sent.append(frame)
        self._responses.extend(self.process_frame(frame))
        return len(data)

    def receive(self, size: int = protocol.PACKET_SIZE) -> bytes:
        if self.closed:
            raise TransportError("Device handle is closed")
        if not self._responses:
            raise TransportTimeout("Interrupt IN transfer timed out (simulated)")
        return self._responses.popleft()[:size]

    def get_string_descriptor(self, index: int) -> str:
        strings = {1: "Silego", 2: "GreenPAK Development Board", 3: self.serial_number}
        try:
            return strings[index]
        except KeyError:
            raise TransportError(f"Failed to read string descriptor {index}") from None

    def close(self):
        self.closed = True

    # ===== Simulation =====

    def process_frame(self, frame: DataFrame) -> List[bytes]:
        """Process one incoming frame, return the packets the board answers with."""
        handler = self.command_handlers.get(frame.type)
        if handler is None:
            logger.warning("Unhandled packet type 0x%02x", frame.type)
            return [self._make_response(frame.type)]
        return handler(bytes(frame.payload), frame)

    @property
    def vdd(self) -> float:
        if 1 in self.siggen_running:
            return self.siggen_voltage.get(1, 0.0)
        return self.supply_voltage

    def pin_voltage(self, pin: int) -> float:
        if pin == 1:
            return self.vdd
        if pin in self.stuck_pins:
            return 0.0
        if pin == 14 and self.installed_part is Part.SLG46621V:
            return self.vdd
        driver = self.io_config.driver_configs[pin]
        if driver.signal is Signal.ONE:
            return self.vdd
        if driver.signal is Signal.SIGGEN and pin in self.siggen_running:
            return self.siggen_voltage.get(pin, 0.0)
        return 0.0

    def _part_matches(self) -> bool:
        return (self.installed_part is not None
                and _family(self.selected_part) == _family(self.installed_part))

    # ===== Command handlers =====

    def _cmd_reset(self, payload, frame):
        self.io_config = IOConfig()
        self.siggen_running.clear()
        return [self._make_response(frame.type)]

    def _cmd_set_part(self, payload, frame):
        code = int.from_bytes(payload[:2], 'big')
        try:
            self.selected_part = Part(code)
        except ValueError:
            self.selected_part = Part.UNRECOGNIZED
        return [self._make_response(frame.type)]

    def _cmd_set_status_led(self, payload, frame):
        self.status_led = bool(payload and payload[0])
        return [self._make_response(frame.type)]

    def _cmd_config_io(self, payload, frame):
        self.io_config = IOConfig.decode(payload)
        return [self._make_response(frame.type)]

    def _cmd_config_siggen(self, payload, frame):
        channel = payload[0]
        mv = struct.unpack('<H', payload[1:3])[0]
        self.siggen_voltage[channel] = mv / 1000.0
        return [self._make_response(frame.type)]

    def _cmd_enable_siggen(self, payload, frame):
        for tp, cmd in zip((1,) + SIGNAL_TEST_POINTS, payload):
            if cmd == SiggenCommand.START:
                self.siggen_running.add(tp)
            elif cmd in (SiggenCommand.STOP, SiggenCommand.PAUSE):
                self.siggen_running.discard(tp)
            elif cmd == SiggenCommand.RESET:
                self.siggen_running.discard(tp)
                self.siggen_voltage.pop(tp, None)
        return [self._make_response(frame.type)]

    def _cmd_get_status(self, payload, frame):
        mv = int(round(self.vdd * 1000))
        data = bytes([self.status_flags]) + struct.pack('<HH', mv, mv)
        return [self._make_response(frame.type, data)]

    def _cmd_config_adc_mux(self, payload, frame):
        self.adc_channel = payload[0]
        return [self._make_response(frame.type)]

    def _cmd_read_adc(self, payload, frame):
        channel = self.adc_channel if self.adc_channel < NUM_TEST_POINTS else 0
        mv = int(round(self.pin_voltage(channel) * 1000))
        return [self._make_response(frame.type, struct.pack('<H', mv))]

    def _cmd_trim_osc(self, payload, frame):
        self.ftw = payload[0]
        return [self._make_response(frame.type)]

    def _cmd_get_osc_freq(self, payload, frame):
        freq = int(self.oscillator(self.ftw)) if self._part_matches() else 0
        return [self._make_response(frame.type, struct.pack('<I', freq))]

    # --- Bitstream upload ---

    def _write_chunk(self, payload, frame, ack2, commit):
        if frame.sequence_a == 1:
            self.upload_buffer = bytearray()
        self.upload_buffer.extend(payload)
        responses = [self._make_response(protocol.WRITE_BITSTREAM_SRAM_ACK1)]
        expected = (bitstream_bytes(self.selected_part)
                    if self.selected_part in (Part.SLG46140V, Part.SLG46620V,
                                              Part.SLG46621V, Part.SLG4662XV)
                    else None)
        if not frame.is_full() or (expected is not None and len(self.upload_buffer) >= expected):
            commit(bytes(self.upload_buffer))
            responses.append(self._make_response(ack2))
        return responses

    def _cmd_write_sram(self, payload, frame):
        def commit(data):
            self.sram = bytearray(data)
            logger.debug("SRAM loaded with %d bytes", len(data))
        return self._write_chunk(payload, frame, protocol.WRITE_BITSTREAM_SRAM_ACK2, commit)

    def _cmd_write_nvram(self, payload, frame):
        def commit(data):
            if self.installed_part is not None:
                self.nvm = bytearray(data)
            logger.debug("NVM programmed with %d bytes", len(data))
        return self._write_chunk(payload, frame, protocol.WRITE_BITSTREAM_NVRAM_ACK2, commit)

    # --- Bitstream readback ---

    def _cmd_read_start(self, payload, frame):
        mode = payload[0] if payload else DownloadMode.EMULATION
        size = (bitstream_bytes(self.selected_part)
                if self.selected_part is not Part.UNRECOGNIZED else 0)
        if not self._part_matches():
            # Nothing answers in this coding
            source = bytes([UNPROGRAMMED_READBACK]) * size
        elif mode == DownloadMode.PROGRAMMING:
            source = bytes(self.nvm)
        else:
            source = bytes(self.sram) or bytes(self.nvm)
        self.readback = source[:size]
        self.readback_pos = 0
        return self._read_chunk()

    def _cmd_read_cont(self, payload, frame):
        return self._read_chunk()

    def _read_chunk(self):
        chunk = self.readback[self.readback_pos:self.readback_pos + protocol.MAX_PAYLOAD]
        self.readback_pos += len(chunk)
        return [self._make_response(protocol.READ_BITSTREAM_ACK, chunk)]

    # ===== Response construction =====

    def _make_response(self, type: int, data: bytes = b'') -> bytes:
        return DataFrame(type, data).encode()


class MockSession(UsbSession):
    """
    USB session over simulated boards.

    Each entry of `boards` is a MockBoard, or a (MockBoard, product id) pair
    for boards that are not in operating mode.
    """

    def __init__(self, boards):
        super().__init__(backend=object())
        self.boards = []
        self.devices = []
        for i, entry in enumerate(boards):
            board, pid = entry if isinstance(entry, tuple) else (entry, DEVBOARD_PID)
            self.boards.append(board)
            self.devices.append(types.SimpleNamespace(
                idProduct=pid, serial_number=board.serial_number, bus=1, address=i + 2))

    def __enter__(self):
        self._active = True
        return self

    def find_devices(self, vid: int):
        if not self._active:
            raise TransportError("USB session is not open")
        return list(self.devices)

    def open_device(self, vid, pid, index, retry=None):
        if index < 0:
            raise ValueError(f"Invalid device index {index} (should be >= 0)")
        devices = self.find_devices(vid)
        if index >= len(devices) or devices[index].idProduct != pid:
            raise DeviceNotFound(f"No device {vid:04x}:{pid:04x} at index {index}")
        board = self.boards[index]
        board.closed = False
        self._transports.append(board)
        return board


def run_loopback_test() -> bool:
    """Exercise the command API against a simulated board; returns True if all passed."""
    print("=== GreenPAK Dev Board Loopback Test ===\n")
    results = []

    def check(name, fn):
        try:
            detail = fn()
        except Exception as e:
            print(f"  ✗ {name}: {type(e).__name__}: {e}")
            results.append(False)
            return
        print(f"  ✓ {name}" + (f" ({detail})" if detail else ""))
        results.append(True)

    mock = MockBoard(Part.SLG46621V)
    board = GPDevBoard(mock)

    check("Reset", board.reset)
    check("Set part", lambda: board.set_part(Part.SLG46620V))
    check("Status", lambda: f"Vdd={board.get_status().voltage_a:.3f} V")

    def detect():
        part, bitstream, kind = detect_part(board)
        if part is not Part.SLG46621V or kind is not BitstreamKind.EMPTY:
            raise AssertionError(f"detected {part_name(part)} ({kind.name})")
        return part_name(part)
    check("Detect part", detect)

    print("\n[Testing bitstream transfer]")
    image = bytes(range(256))

    def sram_roundtrip():
        board.upload_bitstream(len(image), image)
        readback = board.download_bitstream(DownloadMode.EMULATION)
        if readback != image:
            raise AssertionError("SRAM readback differs")
        return f"{len(image)} bytes"
    check("SRAM upload/readback", sram_roundtrip)

    def nvm_classify():
        readback = board.download_bitstream(DownloadMode.PROGRAMMING)
        kind, _ = classify_bitstream(board.part, readback)
        return kind.name
    check("NVM readback", nvm_classify)

    print("\n[Testing oscillator]")

    def oscillator():
        board.trim_oscillator(128)
        return f"{board.measure_oscillator_frequency()} Hz at ftw=128"
    check("Oscillator", oscillator)

    board.close()
    passed = sum(results)
    print(f"\n{passed}/{len(results)} checks passed.")
    return passed == len(results)


if __name__ == '__main__':
    sys.exit(0 if run_loopback_test() else 1)
