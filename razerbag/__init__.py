#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black

from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import attr
import contextlib
import enum
import logging


logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """
    Error indicating that the caller has tried to set the device's
    configuration to an unsupported value, format, or feature.

    This error is recoverable by re-reading the device's current state and
    attempting a different configuration.

    .. attribute:: message

        The error message
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@attr.s
class DeviceBusyError(Exception):
    """
    Error indicating that the caller has tried to change or commit the
    configuration without holding a claim on the device, see
    :meth:`Device.claim`.

    This error is recoverable by claiming the device and trying again.
    """

    message: str = attr.ib()
    name: str = attr.ib(default="")


@attr.s
class Blackbox:
    """
    The manager class for any recorders active in this session.

    The default recordings directory is
    ``$XDG_STATE_HOME/razerbag/recordings/$timestamp``.
    """

    directory: Path = attr.ib()
    _recorders: List["Recorder"] = attr.ib(init=False, default=attr.Factory(list))

    @directory.validator
    def _directory_check(self, attribute, value):
        if value.exists() and not value.is_dir():
            raise ValueError("Path must be a directory")

    @directory.default
    def _directory_default(self):
        import datetime

        ts = datetime.datetime.now().strftime("%Y-%m-%d-%H:%M:%S")
        return Blackbox.default_recordings_directory() / ts

    @staticmethod
    def default_recordings_directory() -> Path:
        import os

        fallback = Path.home() / ".local" / "state"
        statedir = Path(os.environ.get("XDG_STATE_HOME", fallback))
        return statedir / "razerbag" / "recordings"

    def add_recorder(self, recorder: "Recorder"):
        if not self._recorders and not self.directory.exists():
            self.directory.mkdir(exist_ok=True, parents=True)

        self._recorders.append(recorder)

    @property
    def recorders(self) -> Tuple["Recorder", ...]:
        return tuple(self._recorders)

    def make_path(self, filename) -> Path:
        """
        Return a path for ``filename`` that is within this blackbox'
        recordings directory.
        """
        return self.directory / filename

    @classmethod
    def create(cls, directory: Optional[Path] = None) -> "Blackbox":
        if directory is None:
            return cls()
        return cls(directory=directory)


class Recorder(object):
    """
    Recorder can be connected to a :class:`razerbag.driver.UsbDevice` to log
    the control transfers between the host and the device, see
    :meth:`razerbag.driver.UsbDevice.connect_to_recorder`.

    :param config: A dictionary with logger-specific data to initialize
    """

    def __init__(self, config: Dict[str, Any] = {}):
        pass

    def log_ctrl_rx(self, request: int, value: int, data: bytes) -> None:
        """
        Log data received from the device
        """
        pass

    def log_ctrl_tx(self, request: int, value: int, data: bytes) -> None:
        """
        Log data sent to the device
        """
        pass

    def stop(self) -> None:
        """
        Stop recording. Called when the device is closed.
        """
        pass


class Frequency(enum.IntEnum):
    """
    The polling frequency of a device in Hz. :attr:`UNKNOWN` means "unknown
    or unspecified", devices treat it as their default rate.
    """

    UNKNOWN = 0
    HZ_125 = 125
    HZ_500 = 500
    HZ_1000 = 1000


@attr.frozen
class Axis:
    """
    A movement axis of the device. Axes with
    :attr:`independent_dpimapping` can be assigned their own
    :class:`DpiMapping`.
    """

    id: int = attr.ib()
    name: str = attr.ib()
    independent_dpimapping: bool = attr.ib(default=False)


@attr.frozen
class DpiMapping:
    """
    One of the fixed sensitivity settings of the device, with a
    zero-based slot index and the resolution in DPI.
    """

    index: int = attr.ib()
    resolution: int = attr.ib()


class Led(object):
    """
    A single LED on the device. The LED's :attr:`state` is a snapshot taken
    when this object was created or last toggled through it.

    Changing an LED's state requires a claim on the device, and the change
    only takes effect after :meth:`Device.commit`.
    """

    class State(enum.IntEnum):
        OFF = 0
        ON = 1
        UNKNOWN = 2
        """The LED is not available on this device"""

    def __init__(self, device: "Device", id: int, name: str, state: "Led.State"):
        self.device = device
        self.id = id
        self.name = name
        self._state = state

    @property
    def state(self) -> "Led.State":
        return self._state

    def toggle(self, state: "Led.State") -> None:
        """
        Set this LED to the given state.

        :raises ConfigError: if the state is not one of ``ON`` or ``OFF``
        :raises DeviceBusyError: if the device is not claimed
        """
        self.device.set_led(self.id, state)
        self._state = Led.State(state)

    def as_dict(self) -> Dict[str, Any]:
        """
        Returns this LED as a dictionary that can e.g. be printed as YAML
        or JSON.
        """
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.name,
        }

    def __repr__(self):
        return f"<Led {self.id} '{self.name}' {self.state.name}>"


class Profile(object):
    """
    A profile on the device. A device has at least one profile, the number
    of available profiles is device-specific.

    Drivers subclass this and implement the accessors and mutators.

    :param device: the device this profile belongs to
    :param index: the 0-based profile index
    """

    def __init__(self, device: "Device", index: int):
        assert index >= 0
        self.device = device
        self._index = index
        logger.debug(f"{self.device.name}: creating {type(self).__name__} {index}")

    @property
    def index(self) -> int:
        return self._index

    def get_frequency(self) -> Frequency:
        """
        :return: the polling frequency of this profile
        """
        raise NotImplementedError("Function must be implemented in subclass")

    def set_frequency(self, freq: Frequency) -> None:
        """
        Change the polling frequency of this profile.

        :raises ConfigError: if the frequency is not supported
        :raises DeviceBusyError: if the device is not claimed
        """
        raise NotImplementedError("Function must be implemented in subclass")

    def get_dpimapping(
        self, axis: Union[Axis, int, None] = None
    ) -> Optional[DpiMapping]:
        """
        :param axis: the axis to query, ``None`` for the default axis
        :return: the current :class:`DpiMapping` for the axis or ``None``
            if that axis has no DPI mapping
        """
        raise NotImplementedError("Function must be implemented in subclass")

    def set_dpimapping(
        self, mapping: DpiMapping, axis: Union[Axis, int, None] = None
    ) -> None:
        """
        Change the DPI mapping for the given axis, or for all axes if
        ``axis`` is ``None``.

        :raises ConfigError: if the mapping or axis is invalid
        :raises DeviceBusyError: if the device is not claimed
        """
        raise NotImplementedError("Function must be implemented in subclass")

    def as_dict(self) -> Dict[str, Any]:
        """
        Returns this profile as a dictionary that can e.g. be printed as YAML
        or JSON.
        """
        dpimappings = {}
        for axis in self.device.supported_axes():
            mapping = self.get_dpimapping(axis)
            if mapping is not None:
                dpimappings[axis.name] = mapping.resolution

        return {
            "index": self.index,
            "frequency": int(self.get_frequency()),
            "dpi": dpimappings,
        }


class Device(object):
    """
    A device as exposed to razerbag clients. A driver must not return a
    :class:`razerbag.Device` until it is fully set up and ready to be
    accessed by the client.

    Changing the device's configuration is a three-step process: ::

        >>> with device.claimed():  # doctest: +SKIP
        ...     device.profiles[0].set_frequency(razerbag.Frequency.HZ_500)
        ...     device.commit()

    Mutators only change the in-memory state, :meth:`commit` writes all
    changes to the device.

    :param usbdevice: the transport used to talk to this device
    :param name: the device name, defaults to the transport's name
    :param model: the model name, a more precise identifier (where available)
    """

    class Flag(enum.IntFlag):
        NONE = 0
        SUGGEST_FW_UPGRADE = 1 << 0
        """The firmware is known to be buggy, an update is recommended"""

    def __init__(
        self,
        usbdevice: "razerbag.driver.UsbDevice",
        *,
        name: Optional[str] = None,
        model: str = "",
        type: str = "",
    ):
        self.usbdevice = usbdevice
        self.name = name or usbdevice.name
        self.model = model
        self.type = type
        self.flags = Device.Flag.NONE
        self._closed = False

    @property
    def path(self) -> str:
        return self.usbdevice.path

    @property
    def idstr(self) -> str:
        """
        A string uniquely identifying this device on this host, usually the
        model name and the USB location.
        """
        return f"{self.model or self.name}:{self.path}"

    @property
    def firmware_version(self) -> int:
        """
        The firmware version as 16-bit value with the major version in the
        high byte and the minor version in the low byte.
        """
        raise NotImplementedError("Function must be implemented in subclass")

    @property
    def firmware_version_str(self) -> str:
        """
        The firmware version as ``"major.minor"`` string, e.g. ``"1.04"``
        """
        version = self.firmware_version
        return f"{(version >> 8) & 0xFF}.{version & 0xFF:02d}"

    @property
    def profiles(self) -> Tuple[Profile, ...]:
        """
        The tuple of device profiles, in-order sorted by profile index.
        """
        raise NotImplementedError("Function must be implemented in subclass")

    def leds(self) -> Tuple[Led, ...]:
        """
        :return: a tuple of all :class:`Led` available on this device
        """
        raise NotImplementedError("Function must be implemented in subclass")

    def set_led(self, id: int, state: Led.State) -> None:
        """
        Change the state of the LED with the given id, see
        :meth:`Led.toggle`.
        """
        raise NotImplementedError("Function must be implemented in subclass")

    def supported_frequencies(self) -> Tuple[Frequency, ...]:
        raise NotImplementedError("Function must be implemented in subclass")

    def supported_axes(self) -> Tuple[Axis, ...]:
        raise NotImplementedError("Function must be implemented in subclass")

    def supported_resolutions(self) -> Tuple[int, ...]:
        """
        :return: the resolutions in DPI, one per :class:`DpiMapping`
        """
        return tuple(m.resolution for m in self.supported_dpimappings())

    def supported_dpimappings(self) -> Tuple[DpiMapping, ...]:
        raise NotImplementedError("Function must be implemented in subclass")

    def commit(self, force: bool = False) -> None:
        """
        Write the current changes to the device. If there are no pending
        changes and ``force`` is ``False``, this function does nothing.

        This function requires a claim on the device and blocks until
        the device has received all changes.

        If an error occurs, the changes remain pending and the device may
        be in a partially updated state. Calling :meth:`commit` again
        writes all changes again.

        :raises DeviceBusyError: if the device is not claimed
        :raises razerbag.driver.ProtocolError: if communication fails
        """
        raise NotImplementedError("Function must be implemented in subclass")

    @property
    def claim_count(self) -> int:
        return self.usbdevice.claim_count

    @property
    def is_claimed(self) -> bool:
        return self.claim_count > 0

    def claim(self) -> None:
        """
        Claim the device for exclusive use. Claims nest, each claim must be
        paired with a :meth:`release`.

        :raises DeviceBusyError: if the device has been closed
        :raises razerbag.driver.ProtocolError: if the device cannot be claimed
        """
        if self._closed:
            raise DeviceBusyError("Device has been closed", name=self.name)
        self.usbdevice.claim()

    def release(self) -> None:
        self.usbdevice.release()

    @contextlib.contextmanager
    def claimed(self) -> Iterator["Device"]:
        """
        Context manager that claims the device for the duration of the
        ``with`` block.
        """
        self.claim()
        try:
            yield self
        finally:
            self.release()

    def _require_claim(self) -> None:
        if not self.is_claimed:
            raise DeviceBusyError("Device is not claimed", name=self.name)

    def close(self) -> None:
        """
        Detach from this device. The device cannot be used afterwards.
        """
        if self._closed:
            return
        if self.is_claimed:
            logger.warning(f"{self.name}: closing a claimed device")
            while self.is_claimed:
                self.release()
        self._closed = True
        self.usbdevice.close()

    def as_dict(self) -> Dict[str, Any]:
        """
        Returns this device as a dictionary that can e.g. be printed as YAML
        or JSON.
        """
        return {
            "name": self.name,
            "model": self.model,
            "path": str(self.path),
            "type": self.type,
            "firmware_version": self.firmware_version_str,
            "flags": [f.name for f in Device.Flag if f and f in self.flags],
            "frequencies": [int(f) for f in self.supported_frequencies()],
            "resolutions": list(self.supported_resolutions()),
            "leds": [l.as_dict() for l in self.leds()],
            "profiles": [p.as_dict() for p in self.profiles],
        }
