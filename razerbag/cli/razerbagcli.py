#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black

import attr
import click
import contextlib
import logging
import logging.config
import os
import sys
import yaml

from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import razerbag
import razerbag.driver
import razerbag.emulator

# mypy doesn't like late initializations
logger: logging.Logger = None  # type: ignore


@attr.s
class Config(object):
    """
    Abstraction of a device configuration file. Note that this is specific to
    the razerbagcli tool only, device configuration is not handled by
    razerbag itself.

    So all the parsing, etc. is done here and then applied to the various
    razerbag objects. Example: ::

        matches:
          - name: Razer Naga 2014
        leds:
          - name: Scrollwheel
            state: off
        profiles:
          - index: 0
            frequency: 500
            dpi: [800, 1200]
    """

    class Error(Exception):
        pass

    matches: List[Dict[str, str]] = attr.ib(init=False, default=attr.Factory(list))
    leds: List[Dict[str, Any]] = attr.ib(init=False, default=attr.Factory(list))
    profiles: List[Dict[str, Any]] = attr.ib(init=False, default=attr.Factory(list))

    @classmethod
    def create_from_file(cls, filename: Path):
        obj = cls()
        with open(filename) as fd:
            yml = yaml.safe_load(fd)
            obj.parse(yml)
        return obj

    def parse(self, yml):
        if not isinstance(yml, dict):
            raise Config.Error("Config must be a dictionary")

        self.matches = yml.get("matches", [])
        self.leds = yml.get("leds", [])
        self.profiles = yml.get("profiles", [])
        if not self.profiles and not self.leds:
            raise Config.Error("Missing 'profiles' or 'leds' array")

        # verify the config and switch a few things to be more useful:
        # - led state is converted to razerbag.Led.State
        # - index and frequency are converted to int
        # - dpi is converted to an int (x, y) tuple
        for lidx, l in enumerate(self.leds):
            if "name" not in l:
                raise Config.Error(f"LED entry {lidx+1} has no 'name'")
            state = l.get("state", None)
            # YAML parses a bare on/off as boolean
            if isinstance(state, bool):
                state = "on" if state else "off"
            try:
                l["state"] = razerbag.Led.State[str(state).upper()]
            except KeyError:
                raise Config.Error(f"LED {l['name']}: invalid state {state}")
            if l["state"] == razerbag.Led.State.UNKNOWN:
                raise Config.Error(f"LED {l['name']}: state must be on or off")

        for pidx, p in enumerate(self.profiles):
            if "index" not in p:
                raise Config.Error(f"Profile entry {pidx+1} has no 'index'")
            try:
                p["index"] = int(p["index"])
            except (TypeError, ValueError):
                raise Config.Error(f"Profile entry {pidx+1}: invalid index")
            pidx = p["index"]

            frequency = p.get("frequency", None)
            if frequency is not None:
                try:
                    p["frequency"] = int(frequency)
                except ValueError:
                    raise Config.Error(f"Profile {pidx}: invalid frequency {frequency}")

            dpi = p.get("dpi", None)
            if dpi is not None:
                if isinstance(dpi, int):
                    dpi = [dpi, dpi]
                try:
                    x, y = [int(v) for v in dpi]
                except (TypeError, ValueError):
                    raise Config.Error(f"Profile {pidx}: dpi must be an (x, y) tuple")
                p["dpi"] = (x, y)

    def _matches(self, device: razerbag.Device) -> bool:
        if not self.matches:
            return True

        for m in self.matches:
            if m.get("name") and device.name == m["name"]:
                return True

        return False

    def apply(self, device: razerbag.Device, nocommit: bool = False):
        """
        Apply this configuration to the given device.

        If nocommit is True, the config is applied to the virtual device but
        not "committed" to the device itself.

        :raises razerbag.ConfigError: if a value is not supported by the device
        """
        if not self._matches(device):
            return

        leds = {led.name: led for led in device.leds()}

        with device.claimed():
            for lconf in self.leds:
                try:
                    led = leds[lconf["name"]]
                except KeyError:
                    logger.warning(
                        f"Config references nonexisting LED {lconf['name']}. Skipping"
                    )
                    continue
                logger.info(f"LED {led.name} is now {lconf['state'].name}")
                led.toggle(lconf["state"])

            for pconf in self.profiles:
                pidx = pconf["index"]
                try:
                    profile = device.profiles[pidx]
                except IndexError:
                    logger.warning(
                        f"Config references nonexisting profile {pidx}. Skipping"
                    )
                    continue

                logger.info(f"Config found for profile {profile.index}")

                frequency = pconf.get("frequency", None)
                if frequency is not None:
                    logger.info(f"Frequency for {profile.index} is now {frequency}")
                    profile.set_frequency(frequency)

                dpi = pconf.get("dpi", None)
                if dpi is not None:
                    for axis, res in zip(device.supported_axes(), dpi):
                        mapping = _find_dpimapping(device, res)
                        logger.info(f"DPI for {profile.index}.{axis.name} is now {res}")
                        profile.set_dpimapping(mapping, axis)

            if not nocommit:
                device.commit()

    def verify(self, device: razerbag.Device):
        logger.info(f"Verifying config against {device.name}")
        if not self._matches(device):
            return

        def err_non_existing(what, idx):
            click.secho(f"Config references nonexisting {what} {idx}", fg="blue")

        def err_differs(what, idx, item, expected, got):
            what = what.capitalize()
            click.secho(f"{what} {idx} {item} expected {expected}, is {got}", fg="red")

        leds = {led.name: led for led in device.leds()}
        for lconf in self.leds:
            try:
                led = leds[lconf["name"]]
            except KeyError:
                err_non_existing("LED", lconf["name"])
                continue
            if led.state != lconf["state"]:
                err_differs(
                    "LED", led.name, "state", lconf["state"].name, led.state.name
                )

        for pconf in self.profiles:
            pidx = pconf["index"]
            try:
                profile = device.profiles[pidx]
            except IndexError:
                err_non_existing("profile", pidx)
                continue

            frequency = pconf.get("frequency", None)
            if frequency is not None and frequency != profile.get_frequency():
                err_differs(
                    "profile",
                    pidx,
                    "frequency",
                    frequency,
                    int(profile.get_frequency()),
                )

            dpi = pconf.get("dpi", None)
            if dpi is not None:
                for axis, res in zip(device.supported_axes(), dpi):
                    mapping = profile.get_dpimapping(axis)
                    if mapping is None or mapping.resolution != res:
                        got = mapping.resolution if mapping else None
                        err_differs("profile", pidx, f"dpi {axis.name}", res, got)


def _find_dpimapping(device: razerbag.Device, dpi: int) -> razerbag.DpiMapping:
    for mapping in device.supported_dpimappings():
        if mapping.resolution == dpi:
            return mapping
    raise razerbag.ConfigError(f"{dpi} is not a supported resolution")


def _init_logger_config(conf: Optional[Path]) -> None:
    """
    Initialize the logging configuration based on a logger config file
    """
    conf = conf or Path("config-logger.yml")
    if not conf.exists():
        xdg = Path(os.getenv("XDG_CONFIG_HOME", Path.home() / ".config"))
        conf = xdg / "razerbag" / "config-logger.yml"
    if Path(conf).exists():
        with open(conf) as fd:
            yml = yaml.safe_load(fd)
        logging.config.dictConfig(yml)
    else:
        _init_logger(verbose=False)


def _init_logger(verbose: bool) -> None:
    """
    Initialize the logging configuration based on a verbosity level
    """
    lvl = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(format="%(levelname)s: %(name)s: %(message)s", level=lvl)


def _init_emulators(infile: Path) -> List[razerbag.driver.UsbDevice]:
    return [razerbag.emulator.YamlDevice(infile)]


def _find_usb_devices() -> List[razerbag.driver.UsbDevice]:
    usbids: List[razerbag.driver.UsbId] = []
    for driver in razerbag.driver.load_drivers().values():
        usbids.extend(driver.SUPPORTED_DEVICES.keys())
    return razerbag.driver.find_usb_devices(usbids)


@contextlib.contextmanager
def _devices(ctx, name: Optional[str] = None) -> Iterator[List[razerbag.Device]]:
    """
    Probe all supported devices (or the emulated devices with ``--replay``)
    and yield the list of devices whose name contains ``name``. The devices
    are closed afterwards.
    """
    usbdevices = ctx.obj.get("emulators", None)
    if usbdevices is None:
        usbdevices = _find_usb_devices()

    blackbox = ctx.obj.get("blackbox", None)

    devices = []
    for usbdevice in usbdevices:
        if blackbox is not None:
            usbdevice.enable_recorder(blackbox)
        try:
            driverclass = razerbag.driver.find_driver(usbdevice.usbid)
            device = driverclass().probe(usbdevice)
        except razerbag.driver.UnsupportedDeviceError as e:
            logger.info(f"Skipping unsupported device {e.name}")
            continue
        except razerbag.driver.ProtocolError as e:
            logger.error(f"Failed to initialize {e.name}: {e.message}")
            usbdevice.close()
            continue
        if name is None or name in device.name:
            devices.append(device)
        else:
            device.close()

    try:
        yield devices
    finally:
        for device in devices:
            device.close()


def _apply_to_devices(ctx, name: Optional[str], func) -> None:
    """
    Claim each device, call ``func(device)``, then commit.
    """
    with _devices(ctx, name) as devices:
        if not devices:
            click.echo("# No supported devices available")
            return

        for device in devices:
            try:
                with device.claimed():
                    func(device)
                    device.commit()
            except (
                razerbag.ConfigError,
                razerbag.DeviceBusyError,
                razerbag.driver.ProtocolError,
            ) as e:
                click.secho(f"{device.name}: {e.message}", fg="red")
                sys.exit(1)


@click.group()
@click.option("--verbose", count=True, help="Enable debug logging")
@click.option("--quiet", is_flag=True, help="Disable debug logging")
@click.option(
    "--log-config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to the logger config file",
)
@click.option(
    "--record",
    help="Path to the directory to collect recordings in",
    type=click.Path(dir_okay=True, path_type=Path),
)
@click.option(
    "--replay",
    help="Path to the device recording",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.pass_context
def razerbagcli(
    ctx, verbose: int, quiet: bool, log_config: Path, record: Path, replay: Path
):
    global logger

    if quiet:
        _init_logger(verbose=False)
    elif verbose >= 1:
        _init_logger(verbose=True)
    else:
        _init_logger_config(log_config)

    logger = logging.getLogger("razerbagcli")

    ctx.obj = {}
    if record:
        ctx.obj["blackbox"] = razerbag.Blackbox.create(directory=record)
    if replay:
        ctx.obj["emulators"] = _init_emulators(replay)


@razerbagcli.command(name="apply-config")
@click.option(
    "--nocommit", type=bool, is_flag=True, help="Never invoke commit() on the device"
)
@click.argument("config", type=click.Path(exists=True, dir_okay=False))
@click.argument("name", required=False)
@click.pass_context
def razerbagcli_apply_config(ctx, nocommit: bool, config: Path, name: Optional[str]):
    """
    Apply the given config to the device.

    If the --nocommit option is given, the configuration is applied to the
    virtual device but not actually sent to the physical device.

    If a device name is given, only devices with that name are
    configured. The name may be a part of the name, e.g. "Hex" matches the
    "Razer Naga Hex" device.
    """
    try:
        user_config = Config.create_from_file(filename=config)
    except Config.Error as e:
        click.secho(f"Config error in {config}: {str(e)}. Aborting", fg="red")
        sys.exit(1)

    with _devices(ctx, name) as devices:
        for device in devices:
            try:
                user_config.apply(device, nocommit)
            except (razerbag.ConfigError, razerbag.driver.ProtocolError) as e:
                click.secho(f"{device.name}: {e.message}", fg="red")
                sys.exit(1)


@razerbagcli.command(name="verify-config")
@click.argument("config", type=click.Path(exists=True, dir_okay=False), required=True)
@click.argument("name", type=str, required=False)
@click.pass_context
def razerbagcli_verify_config(ctx, config: Path, name: Optional[str]):
    """
    Compare differences between the given config and the current
    configuration of the device.

    Since these devices cannot be queried, the current configuration is the
    default configuration razerbag writes on startup.
    """
    try:
        user_config = Config.create_from_file(filename=config)
    except Config.Error as e:
        click.secho(f"Config error in {config}: {str(e)}. Aborting", fg="red")
        sys.exit(1)

    with _devices(ctx, name) as devices:
        for device in devices:
            user_config.verify(device)


@razerbagcli.command(name="show")
@click.argument("name", required=False)
@click.pass_context
def razerbagcli_show(ctx, name: str):
    """
    Show current configuration of a device

    If a device name is given, only devices with that name are
    shown. The name may be a part of the name, e.g. "Hex" matches the
    "Razer Naga Hex" device.
    """
    with _devices(ctx, name) as devices:
        if devices:
            device_dict = {"devices": [d.as_dict() for d in devices]}
            click.echo(yaml.dump(device_dict, default_flow_style=None))


@razerbagcli.command(name="list")
@click.pass_context
def razerbagcli_list(ctx):
    """
    List all connected supported devices

    The device must be accessible to the user running this command, in many
    cases this requires the command to be run as root.

    If a device is currently connected but not listed, it is not (yet)
    supported by razerbag.
    """
    with _devices(ctx) as devices:
        if not devices:
            click.echo("# No supported devices available")
            return

        click.echo("devices:")
        for device in devices:
            click.echo(f"- name: {device.name}")
            click.echo(f"  idstr: {device.idstr}")


@razerbagcli.command(name="list-supported-devices")
@click.pass_context
def razerbagcli_list_supported(ctx):
    """
    List all known devices. The output of this command is YAML-compatible and
    can be processed with the appropriate tools.
    """
    click.echo("# The following devices are known to razerbag.")
    click.echo("# This list is sorted by device name.")

    devices = []
    for drivername, driver in razerbag.driver.load_drivers().items():
        for usbid, devname in driver.SUPPORTED_DEVICES.items():
            devices.append((devname, usbid, drivername))

    if not devices:
        click.echo("# No supported devices found. This is an installation issue")
        return

    def q(s):
        return f"'{s}'"

    click.echo("devices:")
    for devname, usbid, drivername in sorted(devices):
        click.echo(
            f" - {{ match: {q(usbid):>16s}, driver: {q(drivername):>8s}, name: '{devname}' }}"
        )


@razerbagcli.command(name="set-led")
@click.argument("led", type=str)
@click.argument("state", type=click.Choice(["on", "off"]))
@click.argument("name", required=False)
@click.pass_context
def razerbagcli_set_led(ctx, led: str, state: str, name: Optional[str]):
    """
    Switch the named LED on or off, e.g. "set-led Scrollwheel off".
    """

    def set_led(device):
        for l in device.leds():
            if l.name.lower() == led.lower():
                l.toggle(razerbag.Led.State[state.upper()])
                return
        raise razerbag.ConfigError(f"No LED named {led}")

    _apply_to_devices(ctx, name, set_led)


@razerbagcli.command(name="set-frequency")
@click.argument("frequency", type=int)
@click.argument("name", required=False)
@click.pass_context
def razerbagcli_set_frequency(ctx, frequency: int, name: Optional[str]):
    """
    Set the polling frequency in Hz.
    """

    def set_frequency(device):
        for profile in device.profiles:
            profile.set_frequency(frequency)

    _apply_to_devices(ctx, name, set_frequency)


@razerbagcli.command(name="set-dpi")
@click.option("--axis", type=click.Choice(["x", "y"]), help="Only change this axis")
@click.argument("dpi", type=int)
@click.argument("name", required=False)
@click.pass_context
def razerbagcli_set_dpi(ctx, axis: Optional[str], dpi: int, name: Optional[str]):
    """
    Set the resolution in DPI for both axes or the given axis only.
    """

    def set_dpi(device):
        mapping = _find_dpimapping(device, dpi)
        axis_id = {None: None, "x": 0, "y": 1}[axis]
        for profile in device.profiles:
            profile.set_dpimapping(mapping, axis_id)

    _apply_to_devices(ctx, name, set_dpi)


@razerbagcli.command(name="commit")
@click.option("--force", is_flag=True, help="Write the state even if unchanged")
@click.argument("name", required=False)
@click.pass_context
def razerbagcli_commit(ctx, force: bool, name: Optional[str]):
    """
    Write the current configuration to the device.
    """

    def commit(device):
        device.commit(force=force)

    _apply_to_devices(ctx, name, commit)


@razerbagcli.command(name="help")
@click.pass_context
def razerbagcli_help(ctx):
    """
    Print this help output.
    """
    click.echo(razerbagcli.get_help(ctx.parent))


def main():
    razerbagcli()


if __name__ == "__main__":
    main()
