#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black

import attr
import datetime

from pathlib import Path
from typing import Any, Dict, Optional, TextIO

import razerbag


@attr.s
class YamlDeviceRecorder(razerbag.Recorder):
    """
    A simple recorder that logs the control transfers to/from the device as
    a series of YAML objects. All elements in `info` are logged as
    attributes.

    The output of this logger can be consumed by
    :class:`razerbag.emulator.YamlDevice`.

    Example output: ::

        logger: YamlDeviceRecorder
        version: 1
        attributes:
          - {name: name, type: str, value: Razer Naga 2014}
          - {name: vid, type: int, value: 5426}  # 1532
        data:
          - type: ctrl
            request: 9
            value: 768
            tx: [  0,   0,   0,   0,   0,   2,   0, 129,   # 00 00 00 00 00 02 00 81
                 ...
          - type: ctrl
            request: 1
            value: 768
            rx: [  2,   0,   0,   0,   0,   2,   0, 129,   # 02 00 00 00 00 02 00 81
                 ...

    :param info: a dictionary with attributes to log
    """

    _filename: Path = attr.ib()
    info: Dict = attr.ib()
    last_timestamp: datetime.datetime = attr.ib(init=False)
    logfile: Optional[TextIO] = attr.ib(init=False, default=None)

    @last_timestamp.default
    def last_ts_default(self):
        return datetime.datetime.now()

    @classmethod
    def create_in_blackbox(
        cls, blackbox: razerbag.Blackbox, filename: str, info=dict()
    ) -> "YamlDeviceRecorder":
        recorder = YamlDeviceRecorder(
            filename=blackbox.make_path(filename),
            info=info,
        )
        return recorder

    def start(self) -> None:
        self.logfile = open(self._filename, "w")
        now = self.last_timestamp.strftime("%y-%m-%d %H:%M")
        self.logfile.write(
            f"# generated {now}\n"
            f"logger: {type(self).__name__}\n"
            f"version: 1\n"
            f"attributes:\n"
        )
        for key, value in self.info.items():
            comment = ""
            if type(value) == int:
                tstr = "int"
                comment = f"  # {value:04x}"
            elif type(value) == bytes:
                tstr = "bytes"
                value = list(value)
            else:
                tstr = "str"
                value = "'" + str(value).replace("'", "''") + "'"
            self.logfile.write(
                f"  - {{name: {key}, type: {tstr}, value: {value}}}{comment}\n"
            )

        # So we definitely write out the first current time
        self.last_timestamp = datetime.datetime.fromtimestamp(0)
        self.logfile.write("data:\n")
        self._log_timestamp()
        self.logfile.flush()

    def stop(self) -> None:
        if self.logfile is not None:
            self.logfile.close()
            self.logfile = None

    def _log_timestamp(self) -> None:
        ts = datetime.datetime.now()
        td = ts - self.last_timestamp
        if td > datetime.timedelta(minutes=5):
            self.last_timestamp = ts
            now = ts.strftime("%H:%M")
            self.logfile.write(f"# Current time: {now}\n")

    def _log_bytes(self, data: bytes, prefix: str = "") -> None:
        GROUPING = 8

        prefix += "["
        prefix_len = len(prefix)
        group_width = prefix_len + len(" ,".join(["   "] * GROUPING)) + 2

        if not data:
            self.logfile.write(f"{prefix}]\n")
            return

        idx = 0
        while idx < len(data):
            chunk = data[idx : idx + GROUPING]

            datastr = prefix + ", ".join([f"{v:3d}" for v in chunk])
            humanstr = "  # " + " ".join([f"{v:02x}" for v in chunk])
            if idx + GROUPING >= len(data):
                datastr += "]"
            else:
                datastr += ","

            self.logfile.write(f"{datastr:{group_width}s}{humanstr}\n")
            idx += GROUPING
            prefix = " " * prefix_len

    def _log_data(self, direction: str, data: bytes, extra: Dict[str, Any]):
        if self.logfile is None:
            return

        self._log_timestamp()

        it = iter(extra.items())
        k, v = next(it)
        self.logfile.write(f"  - {k}: {v}\n")
        for k, v in it:
            self.logfile.write(f"    {k}: {v}\n")

        prefix = f"    {direction}: "
        self._log_bytes(data, prefix)
        self.logfile.flush()

    def log_ctrl_tx(self, request: int, value: int, data: bytes) -> None:
        self._log_data(
            "tx", data, extra={"type": "ctrl", "request": request, "value": value}
        )

    def log_ctrl_rx(self, request: int, value: int, data: bytes) -> None:
        self._log_data(
            "rx", data, extra={"type": "ctrl", "request": request, "value": value}
        )
