"""
USB transport for the GreenPAK development board.

The board enumerates as a vendor-specific device with one interface and a pair
of 64-byte interrupt endpoints. Everything above this module only ever sees
``send(bytes)`` / ``receive() -> bytes`` with a fixed timeout; the simulated
board in mock_board.py implements the same three methods.

Usage:
    with UsbSession() as session:
        transport = session.open_device(SILEGO_VID, DEVBOARD_PID, 0)
        transport.send(packet)
        reply = transport.receive()
"""

import errno
import logging
import time
from typing import Callable, Optional

import usb.core
import usb.util

from .errors import DeviceNotFound, TransportError, TransportTimeout

logger = logging.getLogger(__name__)

# USB identifiers
SILEGO_VID = 0x0f0f
DEVBOARD_PID = 0x0006
BOOTLOADER_PID = 0x8006

# Endpoints / transfer parameters
EP_OUT = 0x02
EP_IN = 0x81
PACKET_SIZE = 64
TRANSFER_TIMEOUT_MS = 250

INTERFACE = 0
CONFIGURATION = 1

BUSY_POLL_INTERVAL = 0.1


def _is_busy(e: usb.core.USBError) -> bool:
    return e.errno == errno.EBUSY


def _is_not_found(e: usb.core.USBError) -> bool:
    return e.errno == errno.ENOENT


def _is_timeout(e: usb.core.USBError) -> bool:
    if isinstance(e, usb.core.USBTimeoutError):
        return True
    # libusb reports ETIMEDOUT, WinUSB 10060
    return e.errno in (errno.ETIMEDOUT, 10060)


class BusyRetryPolicy:
    """
    How long to keep polling a board that reports "busy" during open.

    Another process holding the board is the normal case on shared test rigs,
    so the default waits forever. Tests pass ``max_attempts`` to bound it.
    """

    def __init__(self, interval: float = BUSY_POLL_INTERVAL,
                 max_attempts: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.interval = interval
        self.max_attempts = max_attempts
        self.sleep = sleep

    def attempts(self):
        """Yield attempt numbers, sleeping between consecutive ones."""
        n = 0
        while self.max_attempts is None or n < self.max_attempts:
            if n:
                self.sleep(self.interval)
            yield n
            n += 1


class UsbTransport:
    """
    One claimed dev board.

    Exclusively owned: the handle is invalid after close(). Not thread safe
    on its own; GPDevBoard serializes access.
    """

    def __init__(self, device, timeout_ms: int = TRANSFER_TIMEOUT_MS):
        self.device = device
        self.timeout_ms = timeout_ms

    @property
    def is_open(self) -> bool:
        return self.device is not None

    def _require_open(self):
        if self.device is None:
            raise TransportError("Device handle is closed")
        return self.device

    def send(self, data: bytes) -> int:
        """
        Write one packet to the OUT endpoint.

        Returns:
            Number of bytes transferred
        """
        dev = self._require_open()
        try:
            return dev.write(EP_OUT, data, timeout=self.timeout_ms)
        except usb.core.USBError as e:
            if _is_timeout(e):
                raise TransportTimeout(f"Interrupt OUT transfer timed out: {e}") from e
            raise TransportError(f"Interrupt OUT transfer failed: {e}") from e

    def receive(self, size: int = PACKET_SIZE) -> bytes:
        """Read one packet from the IN endpoint."""
        dev = self._require_open()
        try:
            return bytes(dev.read(EP_IN, size, timeout=self.timeout_ms))
        except usb.core.USBError as e:
            if _is_timeout(e):
                raise TransportTimeout(f"Interrupt IN transfer timed out: {e}") from e
            raise TransportError(f"Interrupt IN transfer failed: {e}") from e

    def get_string_descriptor(self, index: int) -> str:
        dev = self._require_open()
        try:
            return usb.util.get_string(dev, index)
        except (usb.core.USBError, ValueError) as e:
            raise TransportError(f"Failed to read string descriptor {index}: {e}") from e

    def close(self):
        """Release the interface and drop the handle."""
        if self.device is None:
            return
        dev, self.device = self.device, None
        try:
            usb.util.release_interface(dev, INTERFACE)
        except usb.core.USBError as e:
            logger.debug("release_interface failed: %s", e)
        usb.util.dispose_resources(dev)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class UsbSession:
    """
    Owns the libusb backend for the lifetime of a ``with`` block.

    Acquired once per process/session and released on every exit path,
    including every transport opened through it.
    """

    def __init__(self, backend=None):
        self._backend = backend
        self._transports = []
        self._active = False

    def __enter__(self):
        if self._backend is None:
            import usb.backend.libusb1
            self._backend = usb.backend.libusb1.get_backend()
            if self._backend is None:
                raise TransportError("libusb backend not available")
        self._active = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        while self._transports:
            self._transports.pop().close()
        self._active = False

    def find_devices(self, vid: int):
        """All attached devices with the given vendor id, in bus order."""
        if not self._active:
            raise TransportError("USB session is not open")
        return list(usb.core.find(find_all=True, idVendor=vid, backend=self._backend))

    def index_of_serial(self, vid: int, serial: str) -> int:
        """Board index (as counted by open_device) of the device with this serial number."""
        for index, dev in enumerate(self.find_devices(vid)):
            try:
                if dev.serial_number == serial:
                    return index
            except (usb.core.USBError, ValueError) as e:
                logger.debug("Can't read serial number of device %d: %s", index, e)
        raise DeviceNotFound(f"No device {vid:04x}:* with serial number {serial!r}")

    def open_device(self, vid: int, pid: int, index: int,
                    retry: Optional[BusyRetryPolicy] = None) -> UsbTransport:
        """
        Open and claim a board.

        Args:
            vid: USB vendor id
            pid: USB product id
            index: Which board to open. Counted over all devices with a
                matching vendor id regardless of product id, so that
                bootloader-mode and operating boards share one index space.
            retry: Busy retry policy for selecting the configuration

        Returns:
            Claimed UsbTransport
        """
        if index < 0:
            raise ValueError(f"Invalid device index {index} (should be >= 0)")

        matches = self.find_devices(vid)
        for dev in matches:
            logger.debug("Found Silego device at bus %s, address %s", dev.bus, dev.address)

        if index >= len(matches) or matches[index].idProduct != pid:
            raise DeviceNotFound(
                f"No device {vid:04x}:{pid:04x} at index {index} "
                f"({len(matches)} vendor match(es))")

        dev = matches[index]
        logger.info("Using device at bus %s, address %s", dev.bus, dev.address)

        try:
            self._prepare(dev, retry or BusyRetryPolicy())
        except BaseException:
            usb.util.dispose_resources(dev)
            raise

        transport = UsbTransport(dev)
        self._transports.append(transport)
        return transport

    def _prepare(self, dev, retry: BusyRetryPolicy):
        # Detach the kernel driver, if any
        try:
            dev.detach_kernel_driver(INTERFACE)
        except usb.core.USBError as e:
            if not _is_not_found(e):
                raise TransportError(f"Can't detach kernel driver: {e}") from e
        except NotImplementedError:
            pass

        # Someone else holding the board shows up as busy here
        last_error = None
        for attempt in retry.attempts():
            try:
                dev.set_configuration(CONFIGURATION)
                break
            except usb.core.USBError as e:
                if not _is_busy(e):
                    raise TransportError(f"Failed to select device configuration: {e}") from e
                if attempt == 0:
                    logger.warning("USB device is currently busy, blocking until it's free...")
                last_error = e
        else:
            raise TransportError(f"Device still busy after {retry.max_attempts} attempts") \
                from last_error

        try:
            usb.util.claim_interface(dev, INTERFACE)
        except usb.core.USBError as e:
            raise TransportError(f"Failed to claim interface: {e}") from e
