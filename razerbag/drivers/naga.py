#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
#
# Driver for the Razer Naga family. The configuration protocol is a 90-byte
# command packet sent via a SET_CONFIGURATION class request to the
# interface, the reply is read back with a CLEAR_FEATURE class request.
#
# The device is write-only, we cannot read the current configuration, so on
# attach we set a known default state and write it to the device.

import attr
import enum
import logging
import struct

from typing import Dict, List, Optional, Tuple, Union

import razerbag
import razerbag.driver
import razerbag.util

from razerbag import Axis, DpiMapping, Frequency, Led
from razerbag.util import as_hex

logger = logging.getLogger(__name__)

RAZER_VID: int = 0x1532


class UsbRequest(enum.IntEnum):
    """
    The standard request codes the firmware (ab)uses for its class
    requests.
    """

    CLEAR_FEATURE = 0x01
    SET_CONFIGURATION = 0x09


COMMAND_VALUE: int = 0x300
"""wValue for all command transfers"""


class NagaCommand(object):
    """
    A command packet as sent to and received from the device. The same
    layout is used for both directions, the device echoes the command and
    fills in the status and values.

    ======= ====== ==========================
    offset  size   field
    ======= ====== ==========================
    0       1      status
    1       3      padding
    4       2      command (big endian)
    6       2      request (big endian)
    8       5      values
    13      75     padding
    88      1      checksum
    89      1      padding
    ======= ====== ==========================

    The checksum is the XOR over bytes 2 to 87 inclusive.
    """

    SIZE = 90
    NVALUES = 5

    OFFSET_STATUS = 0
    OFFSET_COMMAND = 4
    OFFSET_REQUEST = 6
    OFFSET_VALUES = 8
    OFFSET_CHECKSUM = 88
    CHECKSUM_RANGE = (2, SIZE - 2)

    class Status(enum.IntEnum):
        """Reply status codes that are not an error"""

        NEW = 0x00
        BUSY = 0x01
        SUCCESS = 0x02

    def __init__(self):
        self.status = 0
        self.command = 0
        self.request = 0
        self.values = bytearray(NagaCommand.NVALUES)
        self.checksum = 0

    @classmethod
    def create(
        cls, command: int, request: int, values: Union[bytes, List[int]] = b""
    ) -> "NagaCommand":
        """
        Create a new zeroed command with the given header fields. ``values``
        are copied into the start of the value field.
        """
        if len(values) > NagaCommand.NVALUES:
            raise ValueError(f"At most {NagaCommand.NVALUES} values allowed")

        cmd = cls()
        cmd.command = command
        cmd.request = request
        cmd.values[: len(values)] = bytes(values)
        return cmd

    @classmethod
    def from_data(cls, data: bytes) -> "NagaCommand":
        """
        Decode a command packet from the given bytes. The checksum is not
        verified, the device does not reliably fill it in.

        :raises ValueError: if the data is not exactly :attr:`SIZE` bytes
        """
        if len(data) != NagaCommand.SIZE:
            raise ValueError(f"Invalid command size {len(data)}: {as_hex(data)}")

        cmd = cls()
        cmd.status = data[NagaCommand.OFFSET_STATUS]
        cmd.command, cmd.request = struct.unpack_from(
            ">HH", data, NagaCommand.OFFSET_COMMAND
        )
        start = NagaCommand.OFFSET_VALUES
        cmd.values = bytearray(data[start : start + NagaCommand.NVALUES])
        cmd.checksum = data[NagaCommand.OFFSET_CHECKSUM]
        return cmd

    def compute_checksum(self) -> int:
        start, end = NagaCommand.CHECKSUM_RANGE
        return razerbag.util.xor8_checksum(bytes(self)[start:end])

    def sign(self) -> None:
        """
        Fill in the checksum field. Signing an already signed command does
        not change it.
        """
        self.checksum = self.compute_checksum()

    @property
    def is_error(self) -> bool:
        return self.status not in list(NagaCommand.Status)

    def __bytes__(self) -> bytes:
        data = bytearray(NagaCommand.SIZE)
        data[NagaCommand.OFFSET_STATUS] = self.status
        struct.pack_into(
            ">HH", data, NagaCommand.OFFSET_COMMAND, self.command, self.request
        )
        start = NagaCommand.OFFSET_VALUES
        data[start : start + NagaCommand.NVALUES] = self.values
        data[NagaCommand.OFFSET_CHECKSUM] = self.checksum
        return bytes(data)

    def __str__(self) -> str:
        return (
            f"{self.command:04X}/{self.request:04X} status {self.status:02X} "
            f"values {as_hex(bytes(self.values))}"
        )


assert len(bytes(NagaCommand())) == NagaCommand.SIZE


class ResolutionEncoding(enum.Enum):
    """
    How a model encodes the resolution in its resolution command.
    """

    SCALED = enum.auto()
    """One byte per axis, ``((dpi / 100) - 1) * 4``. Up to 5600 DPI."""
    RAW = enum.auto()
    """Big-endian 16 bit DPI value per axis. Up to 8200 DPI."""


class NagaLed(enum.IntEnum):
    SCROLL = 0
    LOGO = 1
    THUMB_GRID = 2


@attr.frozen
class LedDescriptor:
    name: str = attr.ib()
    protocol_id: bytes = attr.ib()
    """The two bytes identifying this LED in the LED command"""


LEDS: Dict[NagaLed, LedDescriptor] = {
    NagaLed.SCROLL: LedDescriptor("Scrollwheel", bytes([0x01, 0x01])),
    NagaLed.LOGO: LedDescriptor("GlowingLogo", bytes([0x01, 0x04])),
    NagaLed.THUMB_GRID: LedDescriptor("ThumbGrid", bytes([0x01, 0x05])),
}

AXES: Tuple[Axis, ...] = (
    Axis(0, "X", independent_dpimapping=True),
    Axis(1, "Y", independent_dpimapping=True),
    Axis(2, "Scroll"),
)

FREQUENCIES: Tuple[Frequency, ...] = (
    Frequency.HZ_125,
    Frequency.HZ_500,
    Frequency.HZ_1000,
)

DEFAULT_RESOLUTION: int = 1000


def fw_version_command() -> NagaCommand:
    """
    The reply carries the firmware version as big-endian 16 bit value in
    the first two values.
    """
    return NagaCommand.create(0x0002, 0x0081)


def resolution_command(
    encoding: ResolutionEncoding, xres: int, yres: int
) -> NagaCommand:
    """
    :param xres: the x resolution in DPI, a multiple of 100
    :param yres: the y resolution in DPI, a multiple of 100
    """
    if encoding == ResolutionEncoding.SCALED:
        values = [((xres // 100) - 1) * 4, ((yres // 100) - 1) * 4]
        return NagaCommand.create(0x0003, 0x0401, values)
    elif encoding == ResolutionEncoding.RAW:
        values = struct.pack(">xHH", xres, yres)
        return NagaCommand.create(0x0007, 0x0405, values)

    raise ValueError(f"Unknown resolution encoding {encoding}")


def led_command(led: NagaLed, state: Led.State) -> NagaCommand:
    on = 1 if state == Led.State.ON else 0
    return NagaCommand.create(0x0003, 0x0300, LEDS[led].protocol_id + bytes([on]))


def frequency_command(freq: Frequency) -> NagaCommand:
    """
    :raises ConfigError: if the frequency is not supported
    """
    mapping = {
        Frequency.HZ_125: 8,
        Frequency.HZ_500: 2,
        Frequency.HZ_1000: 1,
        Frequency.UNKNOWN: 1,
    }
    try:
        value = mapping[freq]
    except KeyError:
        raise razerbag.ConfigError(f"Unsupported frequency {freq}")
    return NagaCommand.create(0x0001, 0x0005, [value])


@attr.frozen
class NagaModel:
    """
    The static description of one product of the Naga family
    """

    name: str = attr.ib()
    nr_dpimappings: int = attr.ib()
    encoding: ResolutionEncoding = attr.ib()
    leds: Tuple[NagaLed, ...] = attr.ib(default=(NagaLed.SCROLL, NagaLed.LOGO))
    min_firmware: Optional[int] = attr.ib(default=None)
    """Firmware versions below this are known to be buggy"""


PID_CLASSIC = 0x0015

MODELS: Dict[int, NagaModel] = {
    PID_CLASSIC: NagaModel("Naga", 56, ResolutionEncoding.SCALED),
    0x001F: NagaModel(
        "Naga Epic", 56, ResolutionEncoding.SCALED, min_firmware=0x0104
    ),
    0x002E: NagaModel("Naga 2012", 56, ResolutionEncoding.SCALED),
    0x0036: NagaModel("Naga Hex", 56, ResolutionEncoding.SCALED),
    0x0050: NagaModel("Naga Hex v2", 56, ResolutionEncoding.SCALED),
    0x0040: NagaModel(
        "Naga 2014",
        82,
        ResolutionEncoding.RAW,
        leds=(NagaLed.SCROLL, NagaLed.LOGO, NagaLed.THUMB_GRID),
    ),
}


@attr.s
class NagaState(object):
    """
    The in-memory configuration of the device. The device cannot be
    queried, this is the only record of its state.
    """

    led_states: Dict[NagaLed, Led.State] = attr.ib()
    dpimapping_x: DpiMapping = attr.ib()
    dpimapping_y: DpiMapping = attr.ib()
    frequency: Frequency = attr.ib(default=Frequency.HZ_1000)
    commit_pending: bool = attr.ib(default=False)

    @classmethod
    def create_default(
        cls, model: NagaModel, dpimappings: Tuple[DpiMapping, ...]
    ) -> "NagaState":
        """
        The default state: 1000 Hz, all LEDs of this model on and both axes
        at 1000 DPI.
        """
        leds = {
            led: (Led.State.ON if led in model.leds else Led.State.UNKNOWN)
            for led in NagaLed
        }
        default = next(m for m in dpimappings if m.resolution == DEFAULT_RESOLUTION)
        return cls(led_states=leds, dpimapping_x=default, dpimapping_y=default)


class NagaProfile(razerbag.Profile):
    def __init__(self, device: "NagaDevice"):
        super().__init__(device, 0)

    def get_frequency(self) -> Frequency:
        return self.device.state.frequency

    def set_frequency(self, freq: Frequency) -> None:
        self.device._require_claim()
        try:
            freq = Frequency(freq)
        except ValueError:
            raise razerbag.ConfigError(f"Invalid frequency {freq}")

        self.device.state.frequency = freq
        self.device.state.commit_pending = True

    def get_dpimapping(
        self, axis: Union[Axis, int, None] = None
    ) -> Optional[DpiMapping]:
        axis_id = self._axis_id(axis)
        if axis_id is None or axis_id == 0:
            return self.device.state.dpimapping_x
        elif axis_id == 1:
            return self.device.state.dpimapping_y
        return None

    def set_dpimapping(
        self, mapping: DpiMapping, axis: Union[Axis, int, None] = None
    ) -> None:
        self.device._require_claim()
        axis_id = self._axis_id(axis)
        if axis_id not in (None, 0, 1):
            raise razerbag.ConfigError(f"Axis {axis_id} has no DPI mapping")
        if mapping not in self.device.supported_dpimappings():
            raise razerbag.ConfigError(f"Unsupported DPI mapping {mapping}")

        state = self.device.state
        if axis_id is None or axis_id == 0:
            state.dpimapping_x = mapping
        if axis_id is None or axis_id == 1:
            state.dpimapping_y = mapping
        state.commit_pending = True

    @staticmethod
    def _axis_id(axis: Union[Axis, int, None]) -> Optional[int]:
        if isinstance(axis, Axis):
            return axis.id
        return axis


class NagaDevice(razerbag.Device):
    """
    A device of the Naga family. Use :meth:`NagaDriver.probe` to create
    one, the device returned there is initialized and ready to use.

    :param model: the product description for this device
    :param clock: the time source for packet spacing and retries
    """

    PACKET_SPACING_MS: int = 25
    FW_PROBE_ATTEMPTS: int = 5
    FW_PROBE_DELAY: float = 0.25

    def __init__(
        self,
        usbdevice: razerbag.driver.UsbDevice,
        model: NagaModel,
        clock: Optional[razerbag.util.Clock] = None,
    ):
        super().__init__(usbdevice, model=model.name, type="naga")
        self.naga_model = model
        self.clock = clock or razerbag.util.Clock()
        self.channel = razerbag.driver.CommandChannel(
            usbdevice,
            razerbag.driver.EventSpacing(NagaDevice.PACKET_SPACING_MS, self.clock),
        )
        self._fw_version = 0
        self._dpimappings = tuple(
            DpiMapping(index=i, resolution=(i + 1) * 100)
            for i in range(model.nr_dpimappings)
        )
        self.state = NagaState.create_default(model, self._dpimappings)
        self._profiles = (NagaProfile(self),)

        usbdevice.add_used_interface(0, 0)

    def attach(self) -> None:
        """
        Initialize the device: read the firmware version and write the
        default configuration. The device is claimed for the duration of
        this call only.

        :raises razerbag.driver.NotReadyError: if the firmware version
            cannot be read
        :raises razerbag.driver.ProtocolError: if the initial commit fails
        """
        with self.claimed():
            version = razerbag.util.retry(
                self.read_fw_version,
                NagaDevice.FW_PROBE_ATTEMPTS,
                delay=NagaDevice.FW_PROBE_DELAY,
                clock=self.clock,
                accept=lambda v: (v & 0xFF00) != 0,
                exceptions=(razerbag.driver.ProtocolError,),
            )
            if version is None:
                logger.error(f"{self.name}: failed to read firmware version")
                raise razerbag.driver.NotReadyError.from_device(
                    self.usbdevice, "Failed to read firmware version"
                )
            self._fw_version = version

            min_fw = self.naga_model.min_firmware
            if min_fw is not None and version < min_fw:
                logger.error(
                    f"The firmware version {self.firmware_version_str} of this "
                    f"{self.model} has known bugs. Please upgrade to version "
                    f"{min_fw >> 8}.{min_fw & 0xFF:02d} or later."
                )
                self.flags |= razerbag.Device.Flag.SUGGEST_FW_UPGRADE

            try:
                self._do_commit()
            except razerbag.driver.ProtocolError:
                logger.error(f"{self.name}: failed to commit initial settings")
                raise

        logger.info(f"{self.idstr}: firmware {self.firmware_version_str}")

    def send_command(self, cmd: NagaCommand) -> NagaCommand:
        """
        Sign and send the command and return the device's reply. A reply
        with an error status is logged but returned like any other reply.

        :raises razerbag.driver.ProtocolError: if the transfer failed
        """
        cmd.sign()
        self.channel.write(UsbRequest.SET_CONFIGURATION, COMMAND_VALUE, bytes(cmd))
        data = self.channel.read(
            UsbRequest.CLEAR_FEATURE, COMMAND_VALUE, NagaCommand.SIZE
        )
        reply = NagaCommand.from_data(data)
        if reply.is_error:
            logger.error(
                f"Command {reply.command:04X}/{reply.request:04X} failed with {reply.status:02X}"
            )
        return reply

    def read_fw_version(self) -> int:
        reply = self.send_command(fw_version_command())
        return struct.unpack_from(">H", reply.values)[0]

    def _do_commit(self) -> None:
        state = self.state

        self.send_command(
            resolution_command(
                self.naga_model.encoding,
                state.dpimapping_x.resolution,
                state.dpimapping_y.resolution,
            )
        )

        for led in NagaLed:
            if state.led_states[led] == Led.State.UNKNOWN:
                continue
            self.send_command(led_command(led, state.led_states[led]))

        self.send_command(frequency_command(state.frequency))

    def commit(self, force: bool = False) -> None:
        self._require_claim()
        if not self.state.commit_pending and not force:
            return

        logger.debug(f"{self.name}: writing current changes to device")
        self._do_commit()
        self.state.commit_pending = False

    @property
    def commit_pending(self) -> bool:
        return self.state.commit_pending

    @property
    def firmware_version(self) -> int:
        return self._fw_version

    @property
    def profiles(self) -> Tuple[razerbag.Profile, ...]:
        return self._profiles

    def leds(self) -> Tuple[Led, ...]:
        return tuple(
            Led(self, led.value, LEDS[led].name, state)
            for led, state in self.state.led_states.items()
            if state != Led.State.UNKNOWN
        )

    def set_led(self, id: int, state: Led.State) -> None:
        try:
            led = NagaLed(id)
        except ValueError:
            raise razerbag.ConfigError(f"Invalid LED {id}")
        if self.state.led_states[led] == Led.State.UNKNOWN:
            raise razerbag.ConfigError(f"LED {LEDS[led].name} is not supported")
        if state not in (Led.State.ON, Led.State.OFF):
            raise razerbag.ConfigError(f"Invalid LED state {state}")

        self._require_claim()
        self.state.led_states[led] = Led.State(state)
        self.state.commit_pending = True

    def supported_frequencies(self) -> Tuple[Frequency, ...]:
        return FREQUENCIES

    def supported_axes(self) -> Tuple[Axis, ...]:
        return AXES

    def supported_dpimappings(self) -> Tuple[DpiMapping, ...]:
        return self._dpimappings


@razerbag.driver.razerbag_driver("naga")
class NagaDriver(razerbag.driver.Driver):
    """
    Driver for the Razer Naga family.
    """

    SUPPORTED_DEVICES = {
        razerbag.driver.UsbId("usb", RAZER_VID, pid): f"Razer {model.name}"
        for pid, model in MODELS.items()
    }

    def probe(self, device: razerbag.driver.UsbDevice) -> NagaDevice:
        """
        Attach to the device. Products unknown to this driver are treated as
        the original Naga.
        """
        if device.info.vid != RAZER_VID:
            raise razerbag.driver.UnsupportedDeviceError(
                name=device.name, path=device.path
            )

        try:
            model = MODELS[device.info.pid]
        except KeyError:
            logger.warning(
                f"{device.name}: unknown product {device.info.pid:04x}, treating as {MODELS[PID_CLASSIC].name}"
            )
            model = MODELS[PID_CLASSIC]

        nagadevice = NagaDevice(device, model, clock=self.clock)
        nagadevice.attach()
        return nagadevice
