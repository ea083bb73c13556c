"""
Unit tests for the USB transport (pyusb patched out, no hardware needed).
Run: python -m pytest gpdevboard/test_transport.py -v
"""

import errno
import unittest
from unittest.mock import Mock, patch

import usb.core

from gpdevboard.errors import DeviceNotFound, TransportError, TransportTimeout
from gpdevboard.transport import (BOOTLOADER_PID, CONFIGURATION, DEVBOARD_PID, EP_IN,
                                  EP_OUT, INTERFACE, SILEGO_VID, TRANSFER_TIMEOUT_MS,
                                  BusyRetryPolicy, UsbSession, UsbTransport)


def fake_device(pid=DEVBOARD_PID, serial="000001"):
    dev = Mock()
    dev.idProduct = pid
    dev.serial_number = serial
    return dev


def busy():
    return usb.core.USBError("Resource busy", errno=errno.EBUSY)


class TestBusyRetryPolicy(unittest.TestCase):

    def test_sleeps_between_attempts(self):
        sleeps = []
        policy = BusyRetryPolicy(interval=0.1, max_attempts=3, sleep=sleeps.append)
        self.assertEqual(list(policy.attempts()), [0, 1, 2])
        self.assertEqual(sleeps, [0.1, 0.1])


@patch('usb.util.dispose_resources')
@patch('usb.util.claim_interface')
@patch('usb.core.find')
class TestOpenDevice(unittest.TestCase):
    """Test device lookup and claiming."""

    def setUp(self):
        self.session = UsbSession(backend=object()).__enter__()
        self.addCleanup(self.session.close)

    def test_no_devices(self, mock_find, mock_claim, mock_dispose):
        """NotFound with nothing attached."""
        mock_find.return_value = iter([])
        with self.assertRaises(DeviceNotFound):
            self.session.open_device(SILEGO_VID, DEVBOARD_PID, 0)
        mock_find.assert_called_once()
        self.assertEqual(mock_find.call_args.kwargs['idVendor'], SILEGO_VID)

    def test_index_out_of_range(self, mock_find, mock_claim, mock_dispose):
        mock_find.return_value = iter([fake_device()])
        with self.assertRaises(DeviceNotFound):
            self.session.open_device(SILEGO_VID, DEVBOARD_PID, 1)

    def test_wrong_product(self, mock_find, mock_claim, mock_dispose):
        """Index counts every vendor device, but the product must match."""
        mock_find.return_value = iter([fake_device(BOOTLOADER_PID)])
        with self.assertRaises(DeviceNotFound):
            self.session.open_device(SILEGO_VID, DEVBOARD_PID, 0)

    def test_negative_index(self, mock_find, mock_claim, mock_dispose):
        with self.assertRaises(ValueError):
            self.session.open_device(SILEGO_VID, DEVBOARD_PID, -1)

    def test_open(self, mock_find, mock_claim, mock_dispose):
        dev = fake_device()
        mock_find.return_value = iter([fake_device(BOOTLOADER_PID), dev])
        transport = self.session.open_device(SILEGO_VID, DEVBOARD_PID, 1)
        self.assertIs(transport.device, dev)
        dev.detach_kernel_driver.assert_called_once_with(INTERFACE)
        dev.set_configuration.assert_called_once_with(CONFIGURATION)
        mock_claim.assert_called_once_with(dev, INTERFACE)

    def test_no_kernel_driver(self, mock_find, mock_claim, mock_dispose):
        """ENOENT from detach means nothing was attached."""
        dev = fake_device()
        dev.detach_kernel_driver.side_effect = usb.core.USBError("x", errno=errno.ENOENT)
        mock_find.return_value = iter([dev])
        self.session.open_device(SILEGO_VID, DEVBOARD_PID, 0)
        mock_claim.assert_called_once()

    def test_busy_then_free(self, mock_find, mock_claim, mock_dispose):
        dev = fake_device()
        dev.set_configuration.side_effect = [busy(), busy(), None]
        mock_find.return_value = iter([dev])
        sleeps = []
        with self.assertLogs('gpdevboard.transport', level='WARNING') as logs:
            self.session.open_device(SILEGO_VID, DEVBOARD_PID, 0,
                                     BusyRetryPolicy(sleep=sleeps.append))
        self.assertEqual(len(logs.records), 1)
        self.assertEqual(sleeps, [0.1, 0.1])
        self.assertEqual(dev.set_configuration.call_count, 3)

    def test_busy_forever(self, mock_find, mock_claim, mock_dispose):
        dev = fake_device()
        dev.set_configuration.side_effect = busy()
        mock_find.return_value = iter([dev])
        with self.assertRaises(TransportError):
            self.session.open_device(SILEGO_VID, DEVBOARD_PID, 0,
                                     BusyRetryPolicy(max_attempts=3, sleep=lambda s: None))
        self.assertEqual(dev.set_configuration.call_count, 3)
        mock_claim.assert_not_called()
        mock_dispose.assert_called_once_with(dev)

    def test_configuration_error(self, mock_find, mock_claim, mock_dispose):
        dev = fake_device()
        dev.set_configuration.side_effect = usb.core.USBError("Access denied", errno=errno.EACCES)
        mock_find.return_value = iter([dev])
        with self.assertRaises(TransportError) as ctx:
            self.session.open_device(SILEGO_VID, DEVBOARD_PID, 0)
        self.assertIsInstance(ctx.exception.__cause__, usb.core.USBError)

    def test_index_of_serial(self, mock_find, mock_claim, mock_dispose):
        mock_find.side_effect = lambda **kwargs: iter([fake_device(serial="A"),
                                                       fake_device(serial="B")])
        self.assertEqual(self.session.index_of_serial(SILEGO_VID, "B"), 1)
        with self.assertRaises(DeviceNotFound):
            self.session.index_of_serial(SILEGO_VID, "C")

    def test_session_closes_transports(self, mock_find, mock_claim, mock_dispose):
        dev = fake_device()
        mock_find.return_value = iter([dev])
        transport = self.session.open_device(SILEGO_VID, DEVBOARD_PID, 0)
        with patch('usb.util.release_interface'):
            self.session.close()
        self.assertFalse(transport.is_open)
        with self.assertRaises(TransportError):
            self.session.find_devices(SILEGO_VID)


class TestUsbTransport(unittest.TestCase):
    """Test interrupt transfers."""

    def setUp(self):
        self.dev = Mock()
        self.transport = UsbTransport(self.dev)

    def test_send(self):
        self.dev.write.return_value = 64
        self.assertEqual(self.transport.send(bytes(64)), 64)
        self.dev.write.assert_called_once_with(EP_OUT, bytes(64), timeout=TRANSFER_TIMEOUT_MS)

    def test_receive(self):
        self.dev.read.return_value = [1, 2, 3]
        self.assertEqual(self.transport.receive(), b'\x01\x02\x03')
        self.dev.read.assert_called_once_with(EP_IN, 64, timeout=TRANSFER_TIMEOUT_MS)

    def test_timeouts(self):
        self.dev.write.side_effect = usb.core.USBTimeoutError("timeout", errno=errno.ETIMEDOUT)
        self.dev.read.side_effect = usb.core.USBError("timeout", errno=errno.ETIMEDOUT)
        with self.assertRaises(TransportTimeout):
            self.transport.send(bytes(64))
        with self.assertRaises(TransportTimeout):
            self.transport.receive()

    def test_io_error(self):
        self.dev.read.side_effect = usb.core.USBError("pipe", errno=errno.EPIPE)
        with self.assertRaises(TransportError) as ctx:
            self.transport.receive()
        self.assertNotIsInstance(ctx.exception, TransportTimeout)

    @patch('usb.util.dispose_resources')
    @patch('usb.util.release_interface')
    def test_close(self, mock_release, mock_dispose):
        with self.transport:
            pass
        mock_release.assert_called_once_with(self.dev, INTERFACE)
        mock_dispose.assert_called_once_with(self.dev)
        with self.assertRaises(TransportError):
            self.transport.send(bytes(64))
        # Second close is a no-op
        self.transport.close()
        mock_dispose.assert_called_once()


if __name__ == '__main__':
    unittest.main()
