#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black

import logging
import pathlib
import yaml

from typing import Dict, List, Optional

import razerbag
import razerbag.driver

from razerbag.util import as_hex

logger = logging.getLogger(__name__)


class InsufficientDataError(Exception):
    """
    Indicates that insufficient data is available for the emulator to work.
    """

    pass


class Reply(object):
    """
    An emulated reply from the device. If the source recording always replied
    with the same value for the request, the reply always yields the same
    value.

    If the source recording has multiple replies for the same request, this reply
    yields those values, in order.
    """

    def __init__(self, tx: bytes, rx: bytes):
        self.tx = tx
        self.values: List[bytes] = [rx]

    def add_value(self, value: bytes):
        self.values.append(value)

    def finalize(self) -> None:
        reduced = list(set(self.values))
        if len(reduced) == 1:
            self.constant = True
            self.values = reduced
        else:
            self.constant = False
            self._it = iter(self.values)

    def next(self) -> bytes:
        if self.constant:
            return self.values[0]

        try:
            return next(self._it)
        except StopIteration:
            raise InsufficientDataError(
                f"Recording has no more replies to request: {as_hex(self.tx)}"
            )


class YamlDevice(razerbag.driver.UsbDevice):
    """
    Creates a :class:`razerbag.driver.UsbDevice` instance based on a
    recording made by :class:`razerbag.recorder.YamlDeviceRecorder`.

    This device is a dictionary of all tx/rx pairs recorded earlier, a
    :meth:`transfer_out` call will look up the interaction and the next
    :meth:`transfer_in` invocation returns the matching data for that
    transmission.

    :param recording: the YAML file previously recorded
    """

    def __init__(self, recording: pathlib.Path):
        with open(recording) as fd:
            y = yaml.safe_load(fd)

        info = razerbag.driver.DeviceInfo(path=f"replay-{pathlib.Path(recording).stem}")
        for att in y["attributes"]:
            if att["type"] == "bytes":
                v = bytes(att["value"])  # type: ignore
            elif att["type"] == "int":
                v = int(att["value"])  # type: ignore
            elif att["type"] == "str":
                v = att["value"]  # type: ignore
            elif att["type"] == "bool":
                v = att["value"].lower() == "true"  # type: ignore
            if att["name"] == "path":
                continue
            setattr(info, att["name"], v)

        super().__init__(info)

        self.conversations: Dict[bytes, Reply] = {}
        self._recv_data: Optional[bytes] = None

        key = None
        for data in y["data"] or []:
            if data.get("type") != "ctrl":
                continue

            tx = data.get("tx")
            if tx is not None:
                key = bytes(tx)
                continue

            rx = data.get("rx")
            if rx is None or key is None:
                continue

            try:
                self.conversations[key].add_value(bytes(rx))
            except KeyError:
                self.conversations[key] = Reply(key, bytes(rx))
            key = None

        for r in self.conversations.values():
            r.finalize()

    def transfer_out(
        self, request_type: int, request: int, value: int, index: int, data: bytes
    ) -> int:
        """
        :raises InsufficientDataError: when the data is not in the recording and
            thus no matching reply can be identified.
        """
        try:
            reply = self.conversations[bytes(data)]
        except KeyError:
            raise InsufficientDataError(
                f"Unable to find reply to request: {as_hex(data)}"
            )
        logger.debug(f"transfer_out: {as_hex(data)}")
        self._recv_data = reply.next()
        return len(data)

    def transfer_in(
        self, request_type: int, request: int, value: int, index: int, size: int
    ) -> bytes:
        """Return the matching reply for the last :meth:`transfer_out` call"""
        if self._recv_data is None:
            raise InsufficientDataError("Read without a preceding write")
        data, self._recv_data = self._recv_data, None
        logger.debug(f"transfer_in: {as_hex(data)}")
        return data
