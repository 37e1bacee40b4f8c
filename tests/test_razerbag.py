#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
#

import razerbag
import razerbag.driver

import pytest


class StubDevice(razerbag.Device):
    def __init__(self, version=0x0104):
        info = razerbag.driver.DeviceInfo(path="usb-003-001", name="stub device")
        super().__init__(razerbag.driver.UsbDevice(info), model="Stub")
        self.version = version
        self.led_calls = []

    @property
    def firmware_version(self):
        return self.version

    def set_led(self, id, state):
        self._require_claim()
        self.led_calls.append((id, state))


@pytest.fixture
def device():
    return StubDevice()


def test_config_error():
    e = razerbag.ConfigError("invalid value")
    assert e.message == "invalid value"
    assert str(e) == "invalid value"


def test_firmware_version_str():
    assert StubDevice(0x0104).firmware_version_str == "1.04"
    assert StubDevice(0x0210).firmware_version_str == "2.16"
    assert StubDevice(0x0000).firmware_version_str == "0.00"


def test_device_defaults(device):
    assert device.name == "stub device"
    assert device.path == "usb-003-001"
    assert device.idstr == "Stub:usb-003-001"
    assert device.flags == razerbag.Device.Flag.NONE

    with pytest.raises(NotImplementedError):
        device.commit()
    with pytest.raises(NotImplementedError):
        device.supported_dpimappings()


def test_claimed(device):
    assert not device.is_claimed
    with device.claimed():
        assert device.claim_count == 1
        with device.claimed():
            assert device.claim_count == 2
        assert device.claim_count == 1
    assert device.claim_count == 0

    with pytest.raises(RuntimeError):
        with device.claimed():
            raise RuntimeError("oops")
    assert device.claim_count == 0


def test_led_toggle(device):
    led = razerbag.Led(device, 1, "GlowingLogo", razerbag.Led.State.ON)
    assert led.as_dict() == {"id": 1, "name": "GlowingLogo", "state": "ON"}

    with pytest.raises(razerbag.DeviceBusyError):
        led.toggle(razerbag.Led.State.OFF)
    assert led.state == razerbag.Led.State.ON

    with device.claimed():
        led.toggle(razerbag.Led.State.OFF)
    assert led.state == razerbag.Led.State.OFF
    assert device.led_calls == [(1, razerbag.Led.State.OFF)]


def test_frequency():
    assert razerbag.Frequency(500) == razerbag.Frequency.HZ_500
    assert int(razerbag.Frequency.UNKNOWN) == 0
    with pytest.raises(ValueError):
        razerbag.Frequency(250)


def test_dpimapping():
    assert razerbag.DpiMapping(0, 100) == razerbag.DpiMapping(0, 100)
    assert razerbag.DpiMapping(0, 100) != razerbag.DpiMapping(1, 200)


def test_blackbox(tmp_path):
    directory = tmp_path / "recordings"
    blackbox = razerbag.Blackbox.create(directory=directory)
    assert not directory.exists()

    blackbox.add_recorder(razerbag.Recorder())
    assert directory.is_dir()
    assert blackbox.make_path("foo.yml") == directory / "foo.yml"
    assert len(blackbox.recorders) == 1

    file = tmp_path / "file"
    file.write_text("")
    with pytest.raises(ValueError):
        razerbag.Blackbox.create(directory=file)


def test_blackbox_default(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path))
    blackbox = razerbag.Blackbox.create()
    assert blackbox.directory.parent == tmp_path / "razerbag" / "recordings"
