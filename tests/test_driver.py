#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
#

import logging
import pytest

import razerbag
import razerbag.driver

from conftest import FakeClock

logger = logging.getLogger(__name__)


class EchoDevice(razerbag.driver.UsbDevice):
    """
    Replies to every read with the data of the last write. Reads fail
    ``read_failures`` times, writes transfer ``short_write`` bytes if set
    and raise if ``write_error`` is set.
    """

    def __init__(self):
        info = razerbag.driver.DeviceInfo(path="usb-002-003", name="Echo")
        super().__init__(info)
        self.last = b""
        self.read_failures = 0
        self.short_write = None
        self.write_error = False
        self.reads = 0
        self.writes = 0

    def transfer_out(self, request_type, request, value, index, data) -> int:
        self.writes += 1
        if self.write_error:
            raise OSError("pipe error")
        self.last = bytes(data)
        if self.short_write is not None:
            return self.short_write
        return len(data)

    def transfer_in(self, request_type, request, value, index, size) -> bytes:
        self.reads += 1
        if self.read_failures > 0:
            self.read_failures -= 1
            raise OSError("timeout")
        return self.last[:size]


class ListRecorder(razerbag.Recorder):
    def __init__(self):
        super().__init__()
        self.log = []

    def log_ctrl_tx(self, request, value, data):
        self.log.append(("tx", request, value, bytes(data)))

    def log_ctrl_rx(self, request, value, data):
        self.log.append(("rx", request, value, bytes(data)))

    def stop(self):
        self.log.append(("stop",))


def test_usbid():
    usbid = razerbag.driver.UsbId.from_string("usb:1532:0040")
    assert usbid == razerbag.driver.UsbId("usb", 0x1532, 0x0040)
    assert str(usbid) == "usb:1532:0040"

    with pytest.raises(ValueError):
        razerbag.driver.UsbId.from_string("usb:1532")
    with pytest.raises(ValueError):
        razerbag.driver.UsbId("usb", 0x10000, 0)
    with pytest.raises(ValueError):
        razerbag.driver.UsbId("serial", 0x1532, 0)


def test_device_info():
    info = razerbag.driver.DeviceInfo(path="usb-001-002", vid=0x1532, pid=0x15)
    assert info.model == "usb:1532:0015:0"
    assert info.name == "Unnamed device"


def test_claim_counter():
    device = EchoDevice()
    assert device.claim_count == 0
    device.claim()
    device.claim()
    assert device.claim_count == 2
    device.release()
    device.release()
    assert device.claim_count == 0

    with pytest.raises(AssertionError):
        device.release()


def test_used_interfaces():
    device = EchoDevice()
    device.add_used_interface(0)
    device.add_used_interface(0, 0)
    device.add_used_interface(1)
    assert device._interfaces == [(0, 0), (1, 0)]


def test_close_stops_recorders():
    device = EchoDevice()
    recorder = ListRecorder()
    device.connect_to_recorder(recorder)
    device.close()
    assert recorder.log == [("stop",)]


def test_event_spacing():
    clock = FakeClock()
    spacing = razerbag.driver.EventSpacing(interval_ms=25, clock=clock)

    with spacing:
        pass
    assert clock.sleeps == []

    clock.time += 0.010
    with spacing:
        pass
    assert clock.sleeps == [pytest.approx(0.015)]

    clock.time += 1.0
    with spacing:
        pass
    assert len(clock.sleeps) == 1


def test_channel_roundtrip():
    clock = FakeClock()
    device = EchoDevice()
    recorder = ListRecorder()
    device.connect_to_recorder(recorder)
    channel = razerbag.driver.CommandChannel(
        device, razerbag.driver.EventSpacing(25, clock)
    )

    channel.write(0x09, 0x300, b"\x01\x02\x03")
    assert channel.read(0x01, 0x300, 3) == b"\x01\x02\x03"
    assert recorder.log == [
        ("tx", 0x09, 0x300, b"\x01\x02\x03"),
        ("rx", 0x01, 0x300, b"\x01\x02\x03"),
    ]


def test_channel_short_write():
    device = EchoDevice()
    device.short_write = 2
    channel = razerbag.driver.CommandChannel(
        device, razerbag.driver.EventSpacing(25, FakeClock())
    )
    with pytest.raises(razerbag.driver.ProtocolError) as e:
        channel.write(0x09, 0x300, b"\x01\x02\x03")
    assert e.value.conversation == [b"\x01\x02\x03"]
    assert e.value.name == "Echo"
    assert device.writes == 1


def test_channel_write_error_not_retried():
    device = EchoDevice()
    device.write_error = True
    channel = razerbag.driver.CommandChannel(
        device, razerbag.driver.EventSpacing(25, FakeClock())
    )
    with pytest.raises(razerbag.driver.ProtocolError):
        channel.write(0x09, 0x300, b"\x01\x02\x03")
    assert device.writes == 1
    assert device.reads == 0


def test_channel_read_retry():
    device = EchoDevice()
    channel = razerbag.driver.CommandChannel(
        device, razerbag.driver.EventSpacing(25, FakeClock())
    )
    channel.write(0x09, 0x300, b"\xaa\xbb")

    device.read_failures = 2
    assert channel.read(0x01, 0x300, 2) == b"\xaa\xbb"
    assert device.reads == 3

    device.reads = 0
    device.read_failures = 3
    with pytest.raises(razerbag.driver.ProtocolError):
        channel.read(0x01, 0x300, 2)
    assert device.reads == 3

    # short reads count as failure
    device.reads = 0
    with pytest.raises(razerbag.driver.ProtocolError):
        channel.read(0x01, 0x300, 5)
    assert device.reads == 3


def test_message_str():
    msg = razerbag.driver.UsbDevice.CtrlRequest(0x09, 0x300, b"\x01\x02")
    assert str(msg) == "ctrl 09/0300 TX (2): 01 02"
    msg = razerbag.driver.UsbDevice.CtrlReply(0x01, 0x300, b"\xff")
    assert str(msg) == "ctrl 01/0300 RX (1): ff"


def test_load_driver_unavailable():
    with pytest.raises(razerbag.driver.DriverUnavailable):
        razerbag.driver.load_driver_by_name("doesnotexist")


def test_find_driver_unsupported():
    usbid = razerbag.driver.UsbId("usb", 0x046D, 0x4053)
    with pytest.raises(razerbag.driver.UnsupportedDeviceError):
        razerbag.driver.find_driver(usbid)
