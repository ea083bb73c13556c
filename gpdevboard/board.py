"""
GreenPAK Development Board - command API

Typed board operations built on the framed protocol. Each call is one or more
request/response roundtrips; nothing here knows about the packet byte layout.

Usage:
    from gpdevboard import open_board, Part

    with open_board(0) as board:
        board.reset()
        board.set_part(Part.SLG46620V)
        status = board.get_status()
        print(f"Vdd = {status.voltage_a:.3f} V")
"""

import dataclasses
import enum
import logging
import struct
import threading
from typing import List, Optional

from . import protocol
from .errors import DeviceNotFound, MalformedResponse, TransportError, UnexpectedAck
from .parts import Part, bitstream_bytes, part_name, wire_index
from .protocol import DataFrame
from .transport import (BOOTLOADER_PID, DEVBOARD_PID, SILEGO_VID,
                        BusyRetryPolicy, UsbSession)

logger = logging.getLogger(__name__)

NUM_TEST_POINTS = 21
# Test points wired to the socket; 0, 1 and 11 are placeholders (1 is Vdd)
SIGNAL_TEST_POINTS = tuple(list(range(2, 11)) + list(range(12, 21)))

MAX_SIGGEN_VOLTAGE = 5.5


# ===== Test point drivers =====

class Signal(enum.Enum):
    """What a test point driver outputs (actual bitstream coding)."""
    FLOAT = 0x0200      # Driver not hooked up at all
    ZERO = 0x0000       # Constant 0
    ONE = 0x0001        # Constant 1
    SIGGEN = 0x0003     # Signal generator


class Strength(enum.Enum):
    STRONG = 0x0c00         # Strong push-pull
    WEAK = 0x0e00           # Weak push-pull
    REALLY_WEAK = 0x0000    # Very weak push-pull
    OD_PU = 0x0400          # Open drain NMOS with opposing pullup
    OD_PD = 0x0600          # Open drain PMOS with opposing pulldown
    OD_PMOS = 0x0a00        # Open drain PMOS
    OD_NMOS = 0x0800        # Open drain NMOS


@dataclasses.dataclass(frozen=True)
class Driver:
    """
    Configuration of one test point driver.

    A floating driver has no strength; every other signal needs one, so
    half-specified drivers cannot be built.
    """
    signal: Signal
    strength: Optional[Strength] = None

    def __post_init__(self):
        if self.signal is Signal.FLOAT:
            if self.strength is not None:
                raise ValueError("A floating driver has no drive strength")
        elif self.strength is None:
            raise ValueError(f"{self.signal.name} driver needs a drive strength")

    @property
    def code(self) -> int:
        if self.signal is Signal.FLOAT:
            return Signal.FLOAT.value
        return self.strength.value | self.signal.value

    @classmethod
    def from_code(cls, code: int) -> 'Driver':
        if code == Signal.FLOAT.value:
            return cls(Signal.FLOAT)
        try:
            return cls(Signal(code & 0x00ff), Strength(code & 0xff00))
        except ValueError:
            raise ValueError(f"Invalid test point driver code 0x{code:04x}") from None


# Final combinations observed in Silego code
TP_NC = Driver(Signal.FLOAT)
TP_VDD = Driver(Signal.ONE, Strength.STRONG)
TP_GND = Driver(Signal.ZERO, Strength.STRONG)
TP_PULLUP = Driver(Signal.ONE, Strength.WEAK)
TP_PULLDOWN = Driver(Signal.ZERO, Strength.WEAK)
TP_FLIMSY_PULLUP = Driver(Signal.ONE, Strength.REALLY_WEAK)
TP_FLIMSY_PULLDOWN = Driver(Signal.ZERO, Strength.REALLY_WEAK)
TP_LOGIC_PP = Driver(Signal.SIGGEN, Strength.STRONG)
TP_LOGIC_OD_PU = Driver(Signal.SIGGEN, Strength.OD_PU)
TP_LOGIC_OD_PD = Driver(Signal.SIGGEN, Strength.OD_PD)
TP_LOGIC_OD_PMOS = Driver(Signal.SIGGEN, Strength.OD_PMOS)
TP_LOGIC_OD_NMOS = Driver(Signal.SIGGEN, Strength.OD_NMOS)
TP_LOGIC_WEAK_PP = Driver(Signal.SIGGEN, Strength.WEAK)
# Used to unstick pins after SRAM upload
TP_RESET = TP_FLIMSY_PULLUP


def _pack_bits(flags: List[bool]) -> bytes:
    mask = 0
    for i, flag in enumerate(flags):
        if flag:
            mask |= 1 << i
    return mask.to_bytes(3, 'little')


def _unpack_bits(data: bytes) -> List[bool]:
    mask = int.from_bytes(data, 'little')
    return [bool(mask & (1 << i)) for i in range(NUM_TEST_POINTS)]


@dataclasses.dataclass
class IOConfig:
    """
    Test point configuration.

    Indexed by test point number, so slots 0, 1 and 11 are wasted. The whole
    table is always sent, unused slots included.
    """
    driver_configs: List[Driver] = dataclasses.field(
        default_factory=lambda: [TP_NC] * NUM_TEST_POINTS)
    led_enabled: List[bool] = dataclasses.field(
        default_factory=lambda: [False] * NUM_TEST_POINTS)
    led_inverted: List[bool] = dataclasses.field(
        default_factory=lambda: [False] * NUM_TEST_POINTS)
    # [1] is Vdd
    expansion_enabled: List[bool] = dataclasses.field(
        default_factory=lambda: [False] * NUM_TEST_POINTS)

    def __post_init__(self):
        for name in ('driver_configs', 'led_enabled', 'led_inverted', 'expansion_enabled'):
            if len(getattr(self, name)) != NUM_TEST_POINTS:
                raise ValueError(f"{name} must have {NUM_TEST_POINTS} entries")

    def encode(self) -> bytes:
        """CONFIG_IO payload: 21 little-endian driver codes, then three 21-bit masks."""
        data = b''.join(struct.pack('<H', d.code) for d in self.driver_configs)
        data += _pack_bits(self.led_enabled)
        data += _pack_bits(self.led_inverted)
        data += _pack_bits(self.expansion_enabled)
        return data

    @classmethod
    def decode(cls, data: bytes) -> 'IOConfig':
        size = NUM_TEST_POINTS * 2 + 9
        if len(data) != size:
            raise ValueError(f"IOConfig payload must be {size} bytes, got {len(data)}")
        codes = struct.unpack(f'<{NUM_TEST_POINTS}H', data[:NUM_TEST_POINTS * 2])
        off = NUM_TEST_POINTS * 2
        return cls(
            driver_configs=[Driver.from_code(c) for c in codes],
            led_enabled=_unpack_bits(data[off:off + 3]),
            led_inverted=_unpack_bits(data[off + 3:off + 6]),
            expansion_enabled=_unpack_bits(data[off + 6:off + 9]),
        )


# ===== Status / commands =====

@dataclasses.dataclass(frozen=True)
class BoardStatus:
    internal_overcurrent: bool = False
    external_overcurrent: bool = False
    internal_undervoltage: bool = False
    voltage_a: float = 0.0
    voltage_b: float = 0.0

    @classmethod
    def from_payload(cls, payload: bytes) -> 'BoardStatus':
        if len(payload) < 5:
            raise MalformedResponse(f"Status payload too short ({len(payload)} bytes)")
        flags = payload[0]
        mv_a, mv_b = struct.unpack('<HH', payload[1:5])
        return cls(
            internal_overcurrent=bool(flags & 0x01),
            external_overcurrent=bool(flags & 0x02),
            internal_undervoltage=bool(flags & 0x04),
            voltage_a=mv_a / 1000.0,
            voltage_b=mv_b / 1000.0,
        )


class SiggenCommand(enum.IntEnum):
    PAUSE = 0x00
    START = 0x01
    STOP = 0x02
    NOP = 0x03
    RESET = 0x07


class DownloadMode(enum.IntEnum):
    """Which internal memory READ_BITSTREAM reads back."""
    EMULATION = 0x00
    TRIMMING = 0x01
    PROGRAMMING = 0x02


class GPDevBoard:
    """
    Command API for one dev board.

    Wraps a transport (UsbTransport or the simulated MockBoard). All calls are
    blocking and serialized: at most one request is in flight per board.
    """

    def __init__(self, transport, session: Optional[UsbSession] = None):
        """
        Args:
            transport: Object with send(bytes), receive() -> bytes and close()
            session: USB session to close together with the board, if owned
        """
        self.transport = transport
        self.part = Part.UNRECOGNIZED
        self._session = session
        self._lock = threading.RLock()

    def close(self):
        """Close the device handle (and the USB session, if owned)."""
        with self._lock:
            if self.transport is not None:
                self.transport.close()
                self.transport = None
            if self._session is not None:
                self._session.close()
                self._session = None

    def own_session(self, session: UsbSession):
        """Close `session` together with this board."""
        self._session = session

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _require_transport(self):
        if self.transport is None:
            raise TransportError("Device handle is closed")
        return self.transport

    def _roundtrip(self, type: int, payload: bytes = b'',
                   ack_type: Optional[int] = None) -> DataFrame:
        with self._lock:
            return protocol.roundtrip(self._require_transport(), DataFrame(type, payload),
                                      ack_type)

    def _command(self, type: int, payload: bytes = b'') -> DataFrame:
        # Plain commands are acknowledged with their own type
        return self._roundtrip(type, payload, ack_type=type)

    def get_string_descriptor(self, index: int) -> str:
        return self._require_transport().get_string_descriptor(index)

    # ===== System =====

    def reset(self):
        """Reset I/O config and signal generators."""
        self._command(protocol.RESET)

    def set_part(self, part: Part):
        """Tell the board which part is in the socket."""
        if not isinstance(part, Part) or part is Part.UNRECOGNIZED:
            raise ValueError(f"Cannot select part {part!r}")
        self._command(protocol.SET_PART, wire_index(part))
        self.part = part

    def set_status_led(self, on: bool):
        self._command(protocol.SET_STATUS_LED, bytes([1 if on else 0]))

    def set_io_config(self, config: IOConfig):
        self._command(protocol.CONFIG_IO, config.encode())

    def get_status(self) -> BoardStatus:
        reply = self._command(protocol.GET_STATUS)
        return BoardStatus.from_payload(bytes(reply.payload))

    def check_status(self) -> bool:
        """
        Log any fault the board reports.

        Returns:
            True if no fault flag is set
        """
        status = self.get_status()
        ok = True
        if status.internal_overcurrent:
            logger.warning("Internal overcurrent")
            ok = False
        if status.external_overcurrent:
            logger.warning("External overcurrent")
            ok = False
        if status.internal_undervoltage:
            logger.warning("Internal undervoltage")
            ok = False
        logger.debug("Rails: A=%.3f V, B=%.3f V", status.voltage_a, status.voltage_b)
        return ok

    # ===== Signal generators =====

    def configure_siggen(self, channel: int, voltage: float):
        """
        Set the output voltage of a signal generator.

        Args:
            channel: Test point number (1 is Vdd)
            voltage: Output voltage in volts
        """
        if not 1 <= channel < NUM_TEST_POINTS or channel == 11:
            raise ValueError(f"Invalid signal generator channel {channel}")
        if not 0.0 <= voltage <= MAX_SIGGEN_VOLTAGE:
            raise ValueError(f"Signal generator voltage {voltage} V out of range")
        payload = bytes([channel]) + struct.pack('<H', int(round(voltage * 1000)))
        self._command(protocol.CONFIG_SIGGEN, payload)

    def control_siggen(self, channel: int, cmd: SiggenCommand):
        """Send `cmd` to one signal generator, NOP to all others."""
        if channel not in (1,) + SIGNAL_TEST_POINTS:
            raise ValueError(f"Invalid signal generator channel {channel}")
        payload = bytes([SiggenCommand(cmd) if tp == channel else SiggenCommand.NOP
                         for tp in (1,) + SIGNAL_TEST_POINTS])
        self._command(protocol.ENABLE_SIGGEN, payload)

    def reset_all_siggens(self):
        payload = bytes([SiggenCommand.RESET] * (1 + len(SIGNAL_TEST_POINTS)))
        self._command(protocol.ENABLE_SIGGEN, payload)

    # ===== ADC =====

    def select_adc_channel(self, channel: int):
        if not 0 <= channel < NUM_TEST_POINTS:
            raise ValueError(f"Invalid ADC channel {channel}")
        self._command(protocol.CONFIG_ADC_MUX, bytes([channel]))

    def read_adc(self) -> float:
        """Read the selected ADC channel, in volts."""
        reply = self._command(protocol.READ_ADC)
        if len(reply.payload) < 2:
            raise MalformedResponse("ADC reply too short")
        return struct.unpack('<H', bytes(reply.payload[:2]))[0] / 1000.0

    def single_read_adc(self, channel: int) -> float:
        """Select and read one channel with nothing in between."""
        with self._lock:
            self.select_adc_channel(channel)
            return self.read_adc()

    # ===== Oscillator =====

    def trim_oscillator(self, ftw: int):
        """Apply an 8-bit frequency tuning word to the part's RC oscillator."""
        if not 0 <= ftw <= 0xff:
            raise ValueError(f"Tuning word {ftw} out of range")
        self._command(protocol.TRIM_OSC, bytes([ftw]))

    def measure_oscillator_frequency(self) -> int:
        """Returns: Oscillator frequency in Hz"""
        reply = self._command(protocol.GET_OSC_FREQ)
        if len(reply.payload) < 4:
            raise MalformedResponse("Oscillator frequency reply too short")
        return struct.unpack('<I', bytes(reply.payload[:4]))[0]

    # ===== Bitstream transfer =====

    def upload_bitstream(self, octets: int, bitstream: bytes, nvram: bool = False):
        """
        Write a bitstream to the part.

        Args:
            octets: Number of bytes to send
            bitstream: Bitstream data (at least `octets` long)
            nvram: Program NVM instead of emulating in SRAM
        """
        if octets <= 0 or octets > len(bitstream):
            raise ValueError(f"Cannot upload {octets} bytes of a {len(bitstream)}-byte bitstream")
        if nvram:
            type, ack1, ack2 = (protocol.WRITE_BITSTREAM_NVRAM, protocol.WRITE_BITSTREAM_NVRAM_ACK1,
                                protocol.WRITE_BITSTREAM_NVRAM_ACK2)
        else:
            type, ack1, ack2 = (protocol.WRITE_BITSTREAM_SRAM, protocol.WRITE_BITSTREAM_SRAM_ACK1,
                                protocol.WRITE_BITSTREAM_SRAM_ACK2)

        with self._lock:
            transport = self._require_transport()
            for frame in protocol.chunk_frames(type, bytes(bitstream[:octets])):
                frame.roundtrip(transport, ack1)
            # Commit
            ack = protocol.receive(transport)
            if ack.type != ack2:
                raise UnexpectedAck(ack2, ack.type)
        logger.debug("Uploaded %d bytes to %s", octets, "NVRAM" if nvram else "SRAM")

    def download_bitstream(self, mode: DownloadMode, part: Optional[Part] = None) -> bytes:
        """
        Read back the bitstream of the part in the socket.

        Args:
            mode: Memory to read from
            part: Part whose length to expect (defaults to the last set_part())

        Returns:
            Bitstream bytes
        """
        mode = DownloadMode(mode)
        part = self.part if part is None else part
        size = bitstream_bytes(part)
        bitstream = bytearray()
        with self._lock:
            transport = self._require_transport()
            frame = DataFrame(protocol.READ_BITSTREAM_START, bytes([mode]))
            while len(bitstream) < size:
                reply = frame.roundtrip(transport, protocol.READ_BITSTREAM_ACK)
                if reply.is_empty():
                    raise MalformedResponse(
                        f"Readback ended after {len(bitstream)} of {size} bytes")
                bitstream.extend(reply.payload)
                frame = DataFrame(protocol.READ_BITSTREAM_CONT,
                                  sequence_a=frame.sequence_a + 1,
                                  sequence_b=frame.sequence_b - 1)
        if len(bitstream) != size:
            raise MalformedResponse(f"Readback returned {len(bitstream)} bytes, expected {size}")
        logger.debug("Downloaded %d bytes (%s, %s)", size, mode.name, part_name(part))
        return bytes(bitstream)


def open_board(index: int = 0, session: Optional[UsbSession] = None,
               retry: Optional[BusyRetryPolicy] = None) -> GPDevBoard:
    """
    Open the dev board at `index`.

    A board enumerating in bootloader mode is reported as not found; there is
    no switch to operating mode here.

    Args:
        index: Board number, counted over every Silego device
        session: Open USB session to use; a private one is created (and owned
            by the returned board) if omitted

    Returns:
        GPDevBoard
    """
    owned = session is None
    if owned:
        session = UsbSession().__enter__()
    try:
        try:
            transport = session.open_device(SILEGO_VID, DEVBOARD_PID, index, retry)
        except DeviceNotFound:
            devices = session.find_devices(SILEGO_VID)
            if index < len(devices) and devices[index].idProduct == BOOTLOADER_PID:
                raise DeviceNotFound(
                    f"Board {index} is in bootloader mode; replug it or switch "
                    f"it to operating mode first") from None
            raise
        board = GPDevBoard(transport, session if owned else None)
    except BaseException:
        if owned:
            session.close()
        raise

    try:
        name = board.get_string_descriptor(2)
        logger.info("Found: %s", name)
    except BaseException:
        board.close()
        raise
    return board
