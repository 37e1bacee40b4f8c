#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
"""
.. module:: util
   :synopsis: A collection of utility functions

"""

import attr
import binascii
import logging
import time

from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def as_hex(bs: bytes) -> str:
    """
    Convert the bytes ``bs`` to a ``"ab 12 cd 34"`` string. ::

        >>> as_hex(bytes([1, 2, 3]))
        '01 02 03'
    """
    if not bs:
        return "<none>"
    hx = binascii.hexlify(bs).decode("ascii")
    return " ".join(["".join(s) for s in zip(hx[::2], hx[1::2])])


def xor8_checksum(bs: bytes) -> int:
    """
    Return the 8-bit XOR over all bytes in ``bs``. ::

        >>> xor8_checksum(bytes([0x01, 0x02, 0x04]))
        7
        >>> xor8_checksum(bytes([0xff, 0xff]))
        0
    """
    csum = 0
    for b in bs:
        csum ^= b
    return csum


@attr.s
class Clock(object):
    """
    The time source used for anything that needs to wait on the device. The
    default uses the monotonic clock and really sleeps, tests swap in a fake
    clock that only advances time.

    All values are in seconds.
    """

    now: Callable[[], float] = attr.ib(default=time.monotonic)
    sleep: Callable[[float], None] = attr.ib(default=time.sleep)


def retry(
    func: Callable[[], T],
    attempts: int,
    *,
    delay: float = 0.0,
    clock: Optional[Clock] = None,
    accept: Callable[[T], bool] = lambda _: True,
    exceptions: Tuple[Type[Exception], ...] = (),
) -> Optional[T]:
    """
    Call ``func`` up to ``attempts`` times and return the first result for
    which ``accept`` returns ``True``. Any exception in ``exceptions`` counts
    as a failed attempt, other exceptions propagate immediately. Between
    attempts, ``delay`` seconds are slept on the given clock.

    :return: the accepted result or ``None`` if all attempts failed
    """
    assert attempts > 0
    clock = clock or Clock()

    for attempt in range(attempts):
        try:
            result = func()
            if accept(result):
                return result
            logger.debug(f"Attempt {attempt + 1}/{attempts}: result not accepted")
        except exceptions as e:
            logger.debug(f"Attempt {attempt + 1}/{attempts} failed: {e}")

        if delay > 0:
            clock.sleep(delay)

    return None

