#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
#

import logging
import pytest

from typing import List, Optional

import razerbag
import razerbag.driver
import razerbag.util
import razerbag.drivers.naga as naga

logger = logging.getLogger(__name__)


class FakeClock(razerbag.util.Clock):
    """
    A clock that never sleeps, sleeping only advances the current time.
    """

    def __init__(self):
        self.time = 0.0
        self.sleeps: List[float] = []
        super().__init__(now=self._now, sleep=self._sleep)

    def _now(self) -> float:
        return self.time

    def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.time += seconds


class NagaTestDevice(razerbag.driver.UsbDevice):
    """
    A software emulation of the Naga firmware. It replies to every command
    with a success status and records every command it received, its
    purpose is to make sure the driver still talks the same protocol if we
    refactor it.

    Failures can be injected:

    - ``fw_failures``: the number of firmware version requests answered
      with an invalid (zero) version
    - ``fw_transfer_failures``: the number of firmware version requests
      whose write fails
    - ``fail_after``: the number of further commands that succeed before
      all writes fail
    - ``read_failures``: the number of reads that fail
    - ``reply_status``: the status byte of every reply
    """

    def __init__(self, pid: int = 0x0040, fw_version: int = 0x0104):
        info = razerbag.driver.DeviceInfo(
            path="usb-001-004",
            name=f"{type(self).__name__}",
            bus="usb",
            vid=naga.RAZER_VID,
            pid=pid,
        )
        super().__init__(info)
        self.fw_version = fw_version
        self.fw_failures = 0
        self.fw_transfer_failures = 0
        self.fail_after: Optional[int] = None
        self.read_failures = 0
        self.reply_status = naga.NagaCommand.Status.SUCCESS
        self.commands: List[naga.NagaCommand] = []
        self.transfers = 0
        self._reply: Optional[naga.NagaCommand] = None

    def transfer_out(self, request_type, request, value, index, data) -> int:
        assert request_type == 0x21
        assert request == naga.UsbRequest.SET_CONFIGURATION
        assert value == 0x300
        assert index == 0
        assert self.claim_count > 0

        self.transfers += 1
        cmd = naga.NagaCommand.from_data(data)
        assert cmd.checksum == cmd.compute_checksum()

        if self.fail_after is not None:
            if self.fail_after == 0:
                raise OSError("write failed")
            self.fail_after -= 1

        if cmd.command == 0x0002 and self.fw_transfer_failures > 0:
            self.fw_transfer_failures -= 1
            raise OSError("write failed")

        self.commands.append(cmd)

        reply = naga.NagaCommand.from_data(data)
        reply.status = self.reply_status
        if (cmd.command, cmd.request) == (0x0002, 0x0081):
            if self.fw_failures > 0:
                self.fw_failures -= 1
                version = 0
            else:
                version = self.fw_version
            reply.values[0:2] = version.to_bytes(2, "big")
        self._reply = reply
        return len(data)

    def transfer_in(self, request_type, request, value, index, size) -> bytes:
        assert request_type == 0xA1
        assert request == naga.UsbRequest.CLEAR_FEATURE
        assert value == 0x300
        assert size == naga.NagaCommand.SIZE

        self.transfers += 1
        if self.read_failures > 0:
            self.read_failures -= 1
            raise OSError("read failed")

        assert self._reply is not None
        return bytes(self._reply)

    def reset(self) -> None:
        self.commands = []
        self.transfers = 0


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def naga2014():
    return NagaTestDevice(pid=0x0040)


@pytest.fixture
def naga_classic():
    return NagaTestDevice(pid=0x0015)


@pytest.fixture
def recording(tmp_path):
    """
    Record the attach sequence of a Naga 2014 with two failed firmware
    probes and return the path to the recording.
    """
    usbdevice = NagaTestDevice(pid=0x0040, fw_version=0x0105)
    usbdevice.fw_failures = 2
    blackbox = razerbag.Blackbox.create(directory=tmp_path / "recordings")
    recorder = usbdevice.enable_recorder(blackbox)

    naga.NagaDriver(clock=FakeClock()).probe(usbdevice)
    recorder.stop()

    return blackbox.make_path("usb-001-004.yml")
