"""
Unit tests for the board command API.
Run: python -m pytest gpdevboard/test_board.py -v
"""

import unittest
from unittest.mock import Mock

from gpdevboard import protocol
from gpdevboard.board import (NUM_TEST_POINTS, TP_FLIMSY_PULLDOWN, TP_NC, TP_VDD,
                              BoardStatus, DownloadMode, Driver, GPDevBoard,
                              IOConfig, SiggenCommand, Signal, Strength, open_board)
from gpdevboard.errors import (DeviceNotFound, MalformedResponse, TransportError,
                               TransportTimeout, UnexpectedAck)
from gpdevboard.mock_board import MockBoard, MockSession
from gpdevboard.parts import Part
from gpdevboard.protocol import DataFrame
from gpdevboard.transport import BOOTLOADER_PID


def scripted_transport(*types):
    """Fake transport answering with frames of the given types, in order."""
    transport = Mock()
    transport.receive.side_effect = [DataFrame(t).encode() for t in types]
    return transport


class TestDriver(unittest.TestCase):
    """Test test point driver values."""

    def test_codes(self):
        self.assertEqual(TP_NC.code, 0x0200)
        self.assertEqual(TP_VDD.code, 0x0c01)
        self.assertEqual(TP_FLIMSY_PULLDOWN.code, 0x0000)

    def test_from_code(self):
        self.assertEqual(Driver.from_code(0x0c01), TP_VDD)
        self.assertEqual(Driver.from_code(0x0200), TP_NC)
        with self.assertRaises(ValueError):
            Driver.from_code(0x0c05)

    def test_incomplete_driver(self):
        """Non-floating drivers need a strength, floating ones must not have one."""
        with self.assertRaises(ValueError):
            Driver(Signal.ONE)
        with self.assertRaises(ValueError):
            Driver(Signal.FLOAT, Strength.STRONG)


class TestIOConfig(unittest.TestCase):
    """Test CONFIG_IO payload layout."""

    def test_default_payload(self):
        data = IOConfig().encode()
        self.assertEqual(len(data), NUM_TEST_POINTS * 2 + 9)
        self.assertEqual(data[:2], b'\x00\x02')
        self.assertEqual(data[-9:], bytes(9))

    def test_encode_decode(self):
        config = IOConfig()
        config.driver_configs[5] = TP_VDD
        config.led_enabled[3] = True
        config.expansion_enabled[1] = True
        data = config.encode()
        self.assertEqual(data[10:12], b'\x01\x0c')
        self.assertEqual(data[42:45], (1 << 3).to_bytes(3, 'little'))
        self.assertEqual(IOConfig.decode(data), config)

    def test_wrong_slot_count(self):
        with self.assertRaises(ValueError):
            IOConfig(driver_configs=[TP_NC] * 20)


class TestStatus(unittest.TestCase):
    """Test status decoding."""

    def test_from_payload(self):
        status = BoardStatus.from_payload(b'\x05\xe4\x0c\x00\x00')
        self.assertTrue(status.internal_overcurrent)
        self.assertFalse(status.external_overcurrent)
        self.assertTrue(status.internal_undervoltage)
        self.assertAlmostEqual(status.voltage_a, 3.3)

    def test_short_payload(self):
        with self.assertRaises(MalformedResponse):
            BoardStatus.from_payload(b'\x00\x01')

    def test_check_status_reports_faults(self):
        mock = MockBoard()
        board = GPDevBoard(mock)
        self.assertTrue(board.check_status())
        mock.status_flags = 0x02
        with self.assertLogs('gpdevboard.board', level='WARNING'):
            self.assertFalse(board.check_status())


class TestCommands(unittest.TestCase):
    """Test commands against the simulated board."""

    def setUp(self):
        self.mock = MockBoard(Part.SLG46620V)
        self.board = GPDevBoard(self.mock)

    def test_set_part(self):
        self.board.set_part(Part.SLG46620V)
        self.assertEqual(self.board.part, Part.SLG46620V)
        self.assertEqual(bytes(self.mock.sent[-1].payload), b'\x06\x20')
        self.assertEqual(self.mock.selected_part, Part.SLG46620V)

    def test_set_part_unrecognized(self):
        """Rejected before anything reaches the transport."""
        transport = Mock()
        board = GPDevBoard(transport)
        with self.assertRaises(ValueError):
            board.set_part(Part.UNRECOGNIZED)
        with self.assertRaises(ValueError):
            board.set_part(0x620)
        transport.send.assert_not_called()
        transport.receive.assert_not_called()

    def test_siggen(self):
        self.board.configure_siggen(1, 3.3)
        self.assertEqual(bytes(self.mock.sent[-1].payload), b'\x01\xe4\x0c')
        self.board.control_siggen(1, SiggenCommand.START)
        payload = bytes(self.mock.sent[-1].payload)
        self.assertEqual(len(payload), 19)
        self.assertEqual(payload[0], SiggenCommand.START)
        self.assertEqual(set(payload[1:]), {SiggenCommand.NOP})
        self.assertIn(1, self.mock.siggen_running)

    def test_siggen_range(self):
        with self.assertRaises(ValueError):
            self.board.configure_siggen(1, 5.6)
        with self.assertRaises(ValueError):
            self.board.configure_siggen(11, 1.0)
        with self.assertRaises(ValueError):
            self.board.control_siggen(0, SiggenCommand.START)
        self.assertEqual(self.mock.sends, 0)

    def test_adc_follows_driver(self):
        config = IOConfig()
        config.driver_configs[5] = TP_VDD
        self.board.set_io_config(config)
        self.assertAlmostEqual(self.board.single_read_adc(5), 3.3)
        self.assertAlmostEqual(self.board.single_read_adc(6), 0.0)

    def test_oscillator(self):
        self.board.set_part(Part.SLG46620V)
        self.board.trim_oscillator(100)
        self.assertEqual(self.board.measure_oscillator_frequency(), 24000)
        with self.assertRaises(ValueError):
            self.board.trim_oscillator(256)


class TestUnexpectedAcks(unittest.TestCase):
    """Every command with a fixed acknowledgment rejects the wrong one."""

    def check(self, call, *types):
        board = GPDevBoard(scripted_transport(*types))
        with self.assertRaises(UnexpectedAck):
            call(board)

    def test_reset(self):
        self.check(lambda b: b.reset(), protocol.GET_STATUS)

    def test_set_part(self):
        """A readback chunk is not an answer to SET_PART."""
        board = GPDevBoard(scripted_transport(protocol.READ_BITSTREAM_ACK))
        with self.assertRaises(UnexpectedAck) as ctx:
            board.set_part(Part.SLG46620V)
        self.assertEqual(ctx.exception.expected, protocol.SET_PART)
        self.assertEqual(ctx.exception.received, protocol.READ_BITSTREAM_ACK)
        self.assertIs(board.part, Part.UNRECOGNIZED)

    def test_set_status_led(self):
        self.check(lambda b: b.set_status_led(True), protocol.RESET)

    def test_set_io_config(self):
        self.check(lambda b: b.set_io_config(IOConfig()), protocol.SET_PART)

    def test_configure_siggen(self):
        self.check(lambda b: b.configure_siggen(1, 3.3), protocol.ENABLE_SIGGEN)

    def test_control_siggen(self):
        self.check(lambda b: b.control_siggen(1, SiggenCommand.START), protocol.CONFIG_SIGGEN)

    def test_reset_all_siggens(self):
        self.check(lambda b: b.reset_all_siggens(), protocol.CONFIG_SIGGEN)

    def test_select_adc_channel(self):
        self.check(lambda b: b.select_adc_channel(5), protocol.READ_ADC)

    def test_trim_oscillator(self):
        self.check(lambda b: b.trim_oscillator(128), protocol.GET_OSC_FREQ)

    def test_get_status(self):
        self.check(lambda b: b.get_status(), protocol.RESET)

    def test_read_adc(self):
        self.check(lambda b: b.read_adc(), protocol.GET_STATUS)

    def test_measure_oscillator(self):
        self.check(lambda b: b.measure_oscillator_frequency(), protocol.READ_ADC)

    def test_download(self):
        self.check(lambda b: b.download_bitstream(DownloadMode.PROGRAMMING, Part.SLG46140V),
                   protocol.WRITE_BITSTREAM_SRAM_ACK1)

    def test_upload_ack1(self):
        self.check(lambda b: b.upload_bitstream(10, bytes(10)), protocol.READ_BITSTREAM_ACK)

    def test_upload_ack2(self):
        self.check(lambda b: b.upload_bitstream(10, bytes(10)),
                   protocol.WRITE_BITSTREAM_SRAM_ACK1, protocol.WRITE_BITSTREAM_NVRAM_ACK2)

    def test_upload_nvram_ack2(self):
        self.check(lambda b: b.upload_bitstream(10, bytes(10), nvram=True),
                   protocol.WRITE_BITSTREAM_NVRAM_ACK1, protocol.WRITE_BITSTREAM_SRAM_ACK2)


class TestClosedBoard(unittest.TestCase):
    """A closed board refuses every operation with a transport error."""

    def setUp(self):
        self.mock = MockBoard(Part.SLG46140V)
        self.board = GPDevBoard(self.mock)
        self.board.close()

    def test_commands(self):
        for call in (lambda b: b.get_status(),
                     lambda b: b.reset(),
                     lambda b: b.set_part(Part.SLG46140V),
                     lambda b: b.get_string_descriptor(2),
                     lambda b: b.upload_bitstream(10, bytes(10)),
                     lambda b: b.download_bitstream(DownloadMode.EMULATION, Part.SLG46140V)):
            with self.assertRaises(TransportError):
                call(self.board)
        self.assertEqual(self.mock.sent, [])

    def test_close_twice(self):
        self.board.close()
        self.assertTrue(self.mock.closed)


class TestBitstreamTransfer(unittest.TestCase):
    """Test upload and readback."""

    def test_upload_frame_count(self):
        """60*k bytes take k sends and k+1 receives."""
        k = 4
        transport = scripted_transport(*([protocol.WRITE_BITSTREAM_SRAM_ACK1] * k
                                         + [protocol.WRITE_BITSTREAM_SRAM_ACK2]))
        GPDevBoard(transport).upload_bitstream(60 * k, bytes(60 * k))
        self.assertEqual(transport.send.call_count, k)
        self.assertEqual(transport.receive.call_count, k + 1)

    def test_upload_timeout_aborts(self):
        """A timeout halfway through stops the transfer."""
        k = 6
        mock = MockBoard(timeout_on_send=k // 2)
        with self.assertRaises(TransportTimeout):
            GPDevBoard(mock).upload_bitstream(60 * k, bytes(60 * k))
        self.assertEqual(mock.sends, k // 2)
        self.assertEqual(len(mock.sent), k // 2 - 1)

    def test_upload_bounds(self):
        board = GPDevBoard(Mock())
        with self.assertRaises(ValueError):
            board.upload_bitstream(0, bytes(10))
        with self.assertRaises(ValueError):
            board.upload_bitstream(11, bytes(10))

    def test_sram_roundtrip(self):
        mock = MockBoard(Part.SLG46140V)
        board = GPDevBoard(mock)
        board.set_part(Part.SLG46140V)
        image = bytes(range(128))
        board.upload_bitstream(len(image), image)
        self.assertEqual(bytes(mock.sram), image)
        self.assertEqual(board.download_bitstream(DownloadMode.EMULATION), image)
        self.assertEqual(mock.sent[-1].type, protocol.READ_BITSTREAM_CONT)
        self.assertEqual(bytes(mock.sent[0].payload), b'\x01\x40')

    def test_nvram_upload(self):
        mock = MockBoard(Part.SLG46620V)
        board = GPDevBoard(mock)
        board.set_part(Part.SLG46620V)
        image = bytes([0x3c]) * 256
        board.upload_bitstream(len(image), image, nvram=True)
        self.assertEqual(board.download_bitstream(DownloadMode.PROGRAMMING), image)

    def test_readback_ends_early(self):
        """An empty readback chunk before the expected length is malformed."""
        board = GPDevBoard(MockBoard(Part.SLG46140V))
        with self.assertRaises(MalformedResponse):
            board.download_bitstream(DownloadMode.PROGRAMMING, Part.SLG46620V)


class TestOpenBoard(unittest.TestCase):
    """Test board selection through a session."""

    def test_no_devices(self):
        with MockSession([]) as session:
            with self.assertRaises(DeviceNotFound):
                open_board(0, session)

    def test_bootloader_mode(self):
        with MockSession([(MockBoard(), BOOTLOADER_PID)]) as session:
            with self.assertRaises(DeviceNotFound) as ctx:
                open_board(0, session)
        self.assertIn("bootloader", str(ctx.exception))

    def test_index(self):
        boards = [MockBoard(serial_number="A"), MockBoard(serial_number="B")]
        with MockSession(boards) as session:
            board = open_board(1, session)
            self.assertIs(board.transport, boards[1])
            board.close()
        self.assertTrue(boards[1].closed)

    def test_session_closes_boards(self):
        mock = MockBoard()
        with MockSession([mock]) as session:
            open_board(0, session)
        self.assertTrue(mock.closed)


if __name__ == '__main__':
    unittest.main()
