#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
#

from click.testing import CliRunner
from razerbag.cli.razerbagcli import razerbagcli, Config

import pytest
import yaml

import razerbag
import razerbag.driver
import razerbag.emulator
import razerbag.drivers.naga as naga

from conftest import FakeClock, NagaTestDevice


def _yaml_output(output: str):
    # log messages may end up in the same output, skip them
    return yaml.safe_load(output[output.index("devices:") :])


def test_razerbagcli_help():
    runner = CliRunner()
    result = runner.invoke(razerbagcli, "help")
    assert result.exit_code == 0
    assert "list-supported-devices" in result.output


def test_razerbagcli_list_supported():
    runner = CliRunner()
    result = runner.invoke(razerbagcli, "list-supported-devices")
    assert result.exit_code == 0
    output = result.stdout
    assert output

    yml = yaml.safe_load(output)
    assert len(yml["devices"]) == 6

    for device in yml["devices"]:
        assert "match" in device
        assert "name" in device
        assert device["driver"] == "naga"

    naga2014 = {"match": "usb:1532:0040", "driver": "naga", "name": "Razer Naga 2014"}
    epic = {"match": "usb:1532:001f", "driver": "naga", "name": "Razer Naga Epic"}
    assert naga2014 in yml["devices"]
    assert epic in yml["devices"]


def test_razerbagcli_show(recording):
    runner = CliRunner()
    result = runner.invoke(razerbagcli, ["--replay", str(recording), "show"])
    assert result.exit_code == 0

    yml = _yaml_output(result.output)
    device = yml["devices"][0]
    assert device["name"] == "NagaTestDevice"
    assert device["model"] == "Naga 2014"
    assert device["firmware_version"] == "1.05"
    assert device["profiles"][0]["frequency"] == 1000


def test_razerbagcli_show_no_match(recording):
    runner = CliRunner()
    result = runner.invoke(
        razerbagcli, ["--replay", str(recording), "show", "Deathadder"]
    )
    assert result.exit_code == 0
    assert "devices:" not in result.output


def test_razerbagcli_list(recording):
    runner = CliRunner()
    result = runner.invoke(razerbagcli, ["--replay", str(recording), "list"])
    assert result.exit_code == 0

    yml = _yaml_output(result.output)
    assert yml["devices"][0]["name"] == "NagaTestDevice"


def test_razerbagcli_set_frequency(recording):
    runner = CliRunner()
    # 1000Hz is the default so the recording has the commands for it
    result = runner.invoke(
        razerbagcli, ["--replay", str(recording), "set-frequency", "1000"]
    )
    assert result.exit_code == 0

    result = runner.invoke(
        razerbagcli, ["--replay", str(recording), "set-frequency", "250"]
    )
    assert result.exit_code == 1


def test_razerbagcli_set_led_unknown(recording):
    runner = CliRunner()
    result = runner.invoke(
        razerbagcli, ["--replay", str(recording), "set-led", "Underglow", "on"]
    )
    assert result.exit_code == 1


def test_razerbagcli_commit(recording):
    runner = CliRunner()
    result = runner.invoke(
        razerbagcli, ["--replay", str(recording), "commit", "--force"]
    )
    assert result.exit_code == 0


def test_razerbagcli_apply_config(recording, tmp_path):
    config = tmp_path / "config.yml"
    config.write_text(
        "leds:\n"
        "  - name: Scrollwheel\n"
        "    state: off\n"
        "profiles:\n"
        "  - index: 0\n"
        "    frequency: 500\n"
        "    dpi: [800, 1600]\n"
    )
    runner = CliRunner()
    result = runner.invoke(
        razerbagcli,
        ["--replay", str(recording), "apply-config", "--nocommit", str(config)],
    )
    assert result.exit_code == 0

    # not in the recording, so committing fails
    result = runner.invoke(
        razerbagcli, ["--replay", str(recording), "apply-config", str(config)]
    )
    assert result.exit_code != 0


def test_razerbagcli_apply_config_invalid(recording, tmp_path):
    config = tmp_path / "config.yml"
    config.write_text("profiles:\n  - frequency: 500\n")
    runner = CliRunner()
    result = runner.invoke(
        razerbagcli, ["--replay", str(recording), "apply-config", str(config)]
    )
    assert result.exit_code == 1
    assert "Config error" in result.output


def test_config_parse():
    config = Config()
    config.parse(
        {
            "leds": [{"name": "GlowingLogo", "state": True}],
            "profiles": [{"index": "0", "frequency": "125", "dpi": 1800}],
        }
    )
    assert config.leds[0]["state"].name == "ON"
    assert config.profiles[0]["index"] == 0
    assert config.profiles[0]["frequency"] == 125
    assert config.profiles[0]["dpi"] == (1800, 1800)

    with pytest.raises(Config.Error):
        Config().parse({})
    with pytest.raises(Config.Error):
        Config().parse({"leds": [{"name": "GlowingLogo", "state": "blinking"}]})
    with pytest.raises(Config.Error):
        Config().parse({"profiles": [{"index": 0, "dpi": [1, 2, 3]}]})


def test_razerbagcli_probe_failure_closes_device(tmp_path, monkeypatch):
    # a device that never reports a firmware version
    usbdevice = NagaTestDevice(pid=0x0040)
    usbdevice.fw_failures = 5
    blackbox = razerbag.Blackbox.create(directory=tmp_path / "recordings")
    recorder = usbdevice.enable_recorder(blackbox)
    with pytest.raises(razerbag.driver.NotReadyError):
        naga.NagaDriver(clock=FakeClock()).probe(usbdevice)
    recorder.stop()

    closed = []
    monkeypatch.setattr(
        razerbag.emulator.YamlDevice, "close", lambda self: closed.append(self)
    )

    runner = CliRunner()
    result = runner.invoke(
        razerbagcli,
        ["--replay", str(blackbox.make_path("usb-001-004.yml")), "show"],
    )
    assert result.exit_code == 0
    assert "devices:" not in result.output
    assert len(closed) == 1
