#!/usr/bin/env python3

# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
#

import attr
import enum
import importlib
import logging
import pkgutil
import usb.core
import usb.util

from typing import Dict, List, Optional, Tuple, Type

import razerbag
import razerbag.util

from razerbag.util import as_hex

logger = logging.getLogger(__name__)

# Contains loaded @razerbag_driver classes
DRIVERS: Dict[str, Type["razerbag.driver.Driver"]] = {}


@attr.s
class DriverUnavailable(Exception):
    message: str = attr.ib()


@attr.s
class UnsupportedDeviceError(Exception):
    """
    Error indicating that the device is not supported. This exception is
    raised for devices that razerbag does not have an implementation for.

    .. note:: This error is unrecoverable without changes to razerbag.
    """

    name: str = attr.ib()
    path: str = attr.ib()


@attr.s
class ProtocolError(Exception):
    """
    Error indicating that the communication with the device encountered an
    error, e.g. a control transfer failed or transferred the wrong number of
    bytes.

    It depends on the specifics on the error whether this is recoverable. A
    failed :meth:`razerbag.Device.commit` leaves the changes pending, so
    the caller may simply commit again.
    """

    message: str = attr.ib()
    """An explanatory message"""
    name: str = attr.ib()
    path: str = attr.ib()

    conversation: List[bytes] = attr.ib(default=attr.Factory(list))
    """
    A list of byte arrays with the context of the failed conversation with
    the device, if any.
    """

    @classmethod
    def from_device(cls, device: "UsbDevice", message: str, **kwargs):
        return cls(message=message, name=device.name, path=device.path, **kwargs)


@attr.s
class NotReadyError(ProtocolError):
    """
    Error indicating that the device did not respond sensibly during
    initialization, e.g. it never reported a valid firmware version.
    """


def razerbag_driver(name):
    """
    Decorator to mark a class as a razerbag driver. This decorator is required
    for driver discovery.

        >>> import razerbag.driver
        >>> @razerbag.driver.razerbag_driver("somedriver")
        ... class SomeDriver(razerbag.driver.Driver):
        ...     pass
        ...
    """

    def decorator_razerbag_driver(cls):
        cls.NAME = name
        DRIVERS[name] = cls
        return cls

    return decorator_razerbag_driver


def load_drivers() -> Dict[str, Type["Driver"]]:
    """
    Import all modules in ``razerbag.drivers`` so their drivers register
    themselves.

    :return: The dictionary of driver name to driver **class**
    """
    import razerbag.drivers

    for mod in pkgutil.iter_modules(razerbag.drivers.__path__):
        try:
            importlib.import_module(f"razerbag.drivers.{mod.name}")
        except ImportError as e:
            logger.warning(f"Importing razerbag.drivers.{mod.name} failed: {e}")

    return DRIVERS


def load_driver_by_name(driver_name: str) -> Type["Driver"]:
    """
    Find the class matching ``driver_name`` and return it, importing the module
    ``"razerbag.drivers.driver_name"`` if necessary.

        >>> cls = load_driver_by_name("naga")
        >>> driver = cls()

    :return: The driver **class** (not an instance thereof)
    :raises DriverUnavailable: if no such driver exists
    """
    if driver_name not in DRIVERS:
        logger.debug(f"Loading driver {driver_name}")
        try:
            importlib.import_module(f"razerbag.drivers.{driver_name}")
        except ImportError as e:
            raise DriverUnavailable(f"Driver '{driver_name}' failed to load: {e}")

    try:
        return DRIVERS[driver_name]
    except KeyError:
        raise DriverUnavailable(
            f"Bug: driver '{driver_name}' does not use '@razerbag_driver'"
        )


def find_driver(usbid: "UsbId") -> Type["Driver"]:
    """
    Return the driver class that supports the device with the given
    :class:`UsbId`.

    :raises UnsupportedDeviceError: if no driver supports this device
    """
    for driver in load_drivers().values():
        if usbid in driver.SUPPORTED_DEVICES:
            return driver

    raise UnsupportedDeviceError(name=f"Unknown device {usbid}", path=str(usbid))


class Message(object):
    """
    A message sent to the device or received from the device. This object
    exists to standardize logging attempts. Drivers should, where possible,
    re-use the existing messages.

    Messages are usually logged as ``type subtype direction data``
    """

    NAME = ""
    SUBTYPE = ""
    """
    The subtype of this message. Used e.g. by control transfers to specify
    the request code and value.
    """

    class Direction(enum.Enum):
        """Message direction"""

        RX = enum.auto()
        """Message received from the device"""
        TX = enum.auto()
        """Message sent to the device"""

    def __init__(self, bytes: bytes, direction: Direction = Direction.TX):
        self.direction = direction
        self.bytes = bytes
        self.msgtype = type(self).NAME
        self.subtype = type(self).SUBTYPE

    def __str__(self) -> str:
        bytestr = as_hex(self.bytes)
        if self.subtype:
            subtype = f" {self.subtype}"
        else:
            subtype = ""
        return f"{self.msgtype}{subtype} {self.direction.name} ({len(self.bytes)}): {bytestr}"


@attr.frozen
class UsbId:
    bus: str = attr.ib(validator=attr.validators.in_(("bluetooth", "usb")))
    """The bus type, one of ``["usb", "bluetooth"]``"""
    vid: int = attr.ib()
    """The vendor ID"""
    pid: int = attr.ib()
    """The Product ID"""

    @vid.validator
    def _validate_vid(self, attribute, value):
        if not 0 <= value <= 0xFFFF:
            raise ValueError("vid must be <= 0xffff")

    @pid.validator
    def _validate_pid(self, attribute, value):
        if not 0 <= value <= 0xFFFF:
            raise ValueError("pid must be <= 0xffff")

    @staticmethod
    def from_string(string: str) -> "UsbId":
        """
        Return a :class:`UsbId` from a string of format ``"usb:0123:00bc"``.

        :raises ValueError: if the string does not match the required format.
        """
        try:
            tokens = string.split(":")
            bus = tokens[0]
            vid = int(tokens[1], 16)
            pid = int(tokens[2], 16)
            return UsbId(bus, vid, pid)
        except Exception:
            raise ValueError(f"Invalid USB ID token {string}")

    def __str__(self):
        return f"{self.bus}:{self.vid:04x}:{self.pid:04x}"


@attr.s
class DeviceInfo:
    """
    Information about a device. This is information collected about a device
    that can help in picking which driver to load, listing the device for the
    user, etc.

    Information collected is (usually) done without claiming the device.
    """

    path: str = attr.ib()
    """The USB location of this device, e.g. ``"usb-001-004"``"""
    name: str = attr.ib(default="Unnamed device")
    bus: str = attr.ib(
        default="usb", validator=attr.validators.in_(("bluetooth", "usb"))
    )
    vid: int = attr.ib(default=0)
    pid: int = attr.ib(default=0)

    @property
    def model(self):
        """
        A razerbag-custom string to uniquely identify this device.

        Usually this string is of the format "bus:vid:pid:0".
        """
        version = 0
        return f"{self.bus}:{self.vid:04x}:{self.pid:04x}:{version}"

    @staticmethod
    def from_pyusb(device: usb.core.Device) -> "DeviceInfo":
        path = f"usb-{device.bus:03d}-{device.address:03d}"
        try:
            name = usb.util.get_string(device, device.iProduct)
        except (usb.core.USBError, ValueError, NotImplementedError):
            name = None
        if not name:
            name = f"Unnamed USB device {device.idVendor:04x}:{device.idProduct:04x}"

        return DeviceInfo(
            path=path,
            name=name,
            bus="usb",
            vid=device.idVendor,
            pid=device.idProduct,
        )


class UsbDevice(object):
    """
    A class abstracting a physical USB device that talks to us via control
    transfers. This class exists so we have a default interface for
    communicating with the device that we can hook into for logging,
    recording and testing.

    The device must be claimed with :meth:`claim` before any transfer. Claims
    are counted, only the first :meth:`claim` claims the used interfaces and
    only the last :meth:`release` gives them back to the kernel.

    :param info: the static information about this device
    :param device: the ``pyusb`` device, or ``None`` for devices that are
        emulated
    """

    TIMEOUT_MS: int = 3000
    """The fixed per-transfer timeout"""

    class CtrlRequest(Message):
        """:meta private:"""

        NAME = "ctrl"

        def __init__(self, request: int, value: int, bytes: bytes):
            super().__init__(bytes, direction=Message.Direction.TX)
            self.subtype = f"{request:02x}/{value:04x}"

    class CtrlReply(Message):
        """:meta private:"""

        NAME = "ctrl"

        def __init__(self, request: int, value: int, bytes: bytes):
            super().__init__(bytes, direction=Message.Direction.RX)
            self.subtype = f"{request:02x}/{value:04x}"

    def __init__(self, info: DeviceInfo, device: Optional[usb.core.Device] = None):
        self._info = info
        self._device = device
        self._claim_count = 0
        self._interfaces: List[Tuple[int, int]] = []
        self._detached: List[int] = []
        self._recorders: List["razerbag.Recorder"] = []

    @classmethod
    def from_pyusb(cls, device: usb.core.Device) -> "UsbDevice":
        return cls(DeviceInfo.from_pyusb(device), device)

    @property
    def info(self) -> DeviceInfo:
        return self._info

    @property
    def usbid(self) -> UsbId:
        return UsbId(self.info.bus, self.info.vid, self.info.pid)

    @property
    def name(self) -> str:
        return self._info.name

    @property
    def path(self) -> str:
        return self._info.path

    @property
    def claim_count(self) -> int:
        return self._claim_count

    def add_used_interface(self, interface: int, altsetting: int = 0) -> None:
        """
        Register an interface that must be claimed together with the device.
        """
        if (interface, altsetting) not in self._interfaces:
            self._interfaces.append((interface, altsetting))

    def claim(self) -> None:
        """
        Claim the device for exclusive use.

        :raises ProtocolError: if the interfaces could not be claimed
        """
        if self._claim_count == 0:
            self._claim_interfaces()
        self._claim_count += 1

    def release(self) -> None:
        """
        Release one claim on this device. Releasing an unclaimed device is a
        bug in the caller.
        """
        assert self._claim_count > 0, "Releasing an unclaimed device"
        self._claim_count -= 1
        if self._claim_count == 0:
            self._release_interfaces()

    def _claim_interfaces(self) -> None:
        if self._device is None:
            return

        try:
            for interface, altsetting in self._interfaces:
                try:
                    if self._device.is_kernel_driver_active(interface):
                        self._device.detach_kernel_driver(interface)
                        self._detached.append(interface)
                except NotImplementedError:
                    pass
                usb.util.claim_interface(self._device, interface)
                if altsetting:
                    self._device.set_interface_altsetting(interface, altsetting)
        except usb.core.USBError as e:
            raise ProtocolError.from_device(self, f"Failed to claim device: {e}")

    def _release_interfaces(self) -> None:
        if self._device is None:
            return

        for interface, _ in self._interfaces:
            try:
                usb.util.release_interface(self._device, interface)
                if interface in self._detached:
                    self._device.attach_kernel_driver(interface)
                    self._detached.remove(interface)
            except usb.core.USBError as e:
                logger.warning(f"{self.name}: failed to release interface: {e}")

    def close(self) -> None:
        """
        Dispose all resources for this device. The device must not be used
        afterwards.
        """
        for recorder in self._recorders:
            recorder.stop()
        if self._device is not None:
            usb.util.dispose_resources(self._device)

    def ctrl_write(
        self, request_type: int, request: int, value: int, index: int, data: bytes
    ) -> int:
        """
        Issue an OUT control transfer with the given data.

        :return: the number of bytes transferred
        :raises OSError: if the transfer failed
        """
        logger.debug(UsbDevice.CtrlRequest(request, value, data))
        for r in self._recorders:
            r.log_ctrl_tx(request, value, data)
        return self.transfer_out(request_type, request, value, index, data)

    def ctrl_read(
        self, request_type: int, request: int, value: int, index: int, size: int
    ) -> bytes:
        """
        Issue an IN control transfer for up to ``size`` bytes.

        :return: the bytes received
        :raises OSError: if the transfer failed
        """
        data = self.transfer_in(request_type, request, value, index, size)
        logger.debug(UsbDevice.CtrlReply(request, value, data))
        for r in self._recorders:
            r.log_ctrl_rx(request, value, data)
        return data

    def transfer_out(
        self, request_type: int, request: int, value: int, index: int, data: bytes
    ) -> int:
        """
        The actual OUT transfer, overridden by emulated devices.

        :meta private:
        """
        return self._device.ctrl_transfer(
            request_type, request, value, index, data, timeout=UsbDevice.TIMEOUT_MS
        )

    def transfer_in(
        self, request_type: int, request: int, value: int, index: int, size: int
    ) -> bytes:
        """
        The actual IN transfer, overridden by emulated devices.

        :meta private:
        """
        return bytes(
            self._device.ctrl_transfer(
                request_type, request, value, index, size, timeout=UsbDevice.TIMEOUT_MS
            )
        )

    def enable_recorder(self, blackbox: "razerbag.Blackbox") -> "razerbag.Recorder":
        from razerbag.recorder import YamlDeviceRecorder

        filename = f"{self.path}.yml"  # usb-001-004.yml etc

        recorder = YamlDeviceRecorder.create_in_blackbox(
            blackbox,
            filename,
            info={
                "name": self.name,
                "path": self.path,
                "vid": self.info.vid,
                "pid": self.info.pid,
            },
        )
        blackbox.add_recorder(recorder)
        self.connect_to_recorder(recorder)
        recorder.start()
        return recorder

    def connect_to_recorder(self, recorder: "razerbag.Recorder") -> None:
        """
        Log all transfers of this device to the given recorder.
        """
        self._recorders.append(recorder)


def find_usb_devices(usbids: List[UsbId]) -> List[UsbDevice]:
    """
    :return: a list of :class:`UsbDevice` for all connected devices with
        one of the given USB IDs. The devices are not claimed.
    """
    devices = []
    for usbid in usbids:
        for d in usb.core.find(find_all=True, idVendor=usbid.vid, idProduct=usbid.pid):
            devices.append(UsbDevice.from_pyusb(d))
    return devices


@attr.s
class EventSpacing(object):
    """
    Enforces a minimum interval between two events, e.g. two packets sent to
    a device whose firmware drops or corrupts requests arriving too fast.

        >>> spacing = EventSpacing(interval_ms=25)
        >>> with spacing:
        ...     pass  # send a packet

    :meth:`enter` blocks until at least ``interval_ms`` have elapsed since the
    last :meth:`leave`.
    """

    interval_ms: int = attr.ib()
    clock: razerbag.util.Clock = attr.ib(default=attr.Factory(razerbag.util.Clock))
    _last_event: Optional[float] = attr.ib(init=False, default=None)

    def enter(self) -> None:
        if self._last_event is None:
            return

        elapsed = self.clock.now() - self._last_event
        remaining = self.interval_ms / 1000 - elapsed
        if remaining > 0:
            self.clock.sleep(remaining)

    def leave(self) -> None:
        self._last_event = self.clock.now()

    def __enter__(self):
        self.enter()
        return self

    def __exit__(self, *exc):
        self.leave()
        return False


@attr.s
class CommandChannel(object):
    """
    Request/response transfers to a device over class-specific control
    transfers to an interface. Each transfer is spaced by the given
    :class:`EventSpacing`.

    Writes are not retried, reads are retried up to :attr:`READ_ATTEMPTS`
    times before failing.
    """

    READ_ATTEMPTS: int = 3

    device: UsbDevice = attr.ib()
    spacing: EventSpacing = attr.ib()
    interface: int = attr.ib(default=0)

    def write(self, request: int, value: int, data: bytes) -> None:
        """
        :raises ProtocolError: if the transfer fails or does not transfer
            all of ``data``
        """
        request_type = usb.util.build_request_type(
            usb.util.CTRL_OUT,
            usb.util.CTRL_TYPE_CLASS,
            usb.util.CTRL_RECIPIENT_INTERFACE,
        )
        with self.spacing:
            try:
                rc = self.device.ctrl_write(
                    request_type, request, value, self.interface, data
                )
            except OSError as e:
                rc = e

        if rc != len(data):
            logger.error(f"USB write 0x{request:02X} 0x{value:02X} failed: {rc}")
            raise ProtocolError.from_device(
                self.device,
                f"USB write 0x{request:02X} 0x{value:02X} failed: {rc}",
                conversation=[bytes(data)],
            )

    def read(self, request: int, value: int, size: int) -> bytes:
        """
        :return: exactly ``size`` bytes
        :raises ProtocolError: if all attempts failed
        """
        request_type = usb.util.build_request_type(
            usb.util.CTRL_IN,
            usb.util.CTRL_TYPE_CLASS,
            usb.util.CTRL_RECIPIENT_INTERFACE,
        )

        def transfer() -> bytes:
            with self.spacing:
                return self.device.ctrl_read(
                    request_type, request, value, self.interface, size
                )

        data = razerbag.util.retry(
            transfer,
            CommandChannel.READ_ATTEMPTS,
            clock=self.spacing.clock,
            accept=lambda d: len(d) == size,
            exceptions=(OSError,),
        )
        if data is None:
            logger.error(f"USB read 0x{request:02X} 0x{value:02X} failed")
            raise ProtocolError.from_device(
                self.device, f"USB read 0x{request:02X} 0x{value:02X} failed"
            )
        return data


class Driver(object):
    """
    The parent class for all driver implementations. See
    ``razerbag/drivers/drivername.py`` for the implementation of each driver
    itself.

    A driver **must** be decorated with :func:`razerbag_driver` to be found
    by :func:`find_driver` and :func:`load_driver_by_name`.

    .. attribute:: SUPPORTED_DEVICES

        A dict of :class:`UsbId` to device name for all devices this driver
        handles
    """

    NAME: str = ""
    SUPPORTED_DEVICES: Dict[UsbId, str] = {}

    def __init__(self, clock: Optional[razerbag.util.Clock] = None):
        self.clock = clock or razerbag.util.Clock()

    def probe(self, device: UsbDevice) -> "razerbag.Device":
        """
        Attach to the given (unclaimed) device and return the
        :class:`razerbag.Device` for it. The returned device is fully
        initialized and not claimed.

        :raises UnsupportedDeviceError: if the device is not handled by this
            driver
        :raises ProtocolError: if the device could not be initialized
        """
        raise NotImplementedError("Function must be implemented in subclass")
