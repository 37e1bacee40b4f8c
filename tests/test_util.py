#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black

import logging
import pytest

import razerbag.util

from conftest import FakeClock

logger = logging.getLogger(__name__)


def test_as_hex():
    assert razerbag.util.as_hex(bytes([0x01, 0xAB, 0xFF])) == "01 ab ff"
    assert razerbag.util.as_hex(b"") == "<none>"


def test_xor8_checksum():
    assert razerbag.util.xor8_checksum(b"") == 0
    assert razerbag.util.xor8_checksum(bytes([0x12])) == 0x12
    assert razerbag.util.xor8_checksum(bytes([0x0F, 0xF0, 0x01])) == 0xFE
    assert razerbag.util.xor8_checksum(bytes([0xAA, 0xAA])) == 0


def test_retry_first_success():
    clock = FakeClock()
    calls = []

    def func():
        calls.append(1)
        return 42

    assert razerbag.util.retry(func, 5, delay=1.0, clock=clock) == 42
    assert len(calls) == 1
    assert clock.sleeps == []


def test_retry_accept():
    clock = FakeClock()
    results = iter([0, 0, 0, 0, 0x0104])

    result = razerbag.util.retry(
        lambda: next(results),
        5,
        delay=0.25,
        clock=clock,
        accept=lambda v: v != 0,
    )
    assert result == 0x0104
    assert clock.sleeps == [0.25] * 4


def test_retry_exhausted():
    clock = FakeClock()

    def func():
        raise OSError("nope")

    result = razerbag.util.retry(
        func, 3, delay=0.5, clock=clock, exceptions=(OSError,)
    )
    assert result is None
    assert len(clock.sleeps) == 3
    assert clock.time == pytest.approx(1.5)


def test_retry_unlisted_exception():
    calls = []

    def func():
        calls.append(1)
        raise KeyError("unexpected")

    with pytest.raises(KeyError):
        razerbag.util.retry(func, 3, exceptions=(OSError,))
    assert len(calls) == 1


def test_clock_default():
    clock = razerbag.util.Clock()
    t1 = clock.now()
    t2 = clock.now()
    assert t2 >= t1
