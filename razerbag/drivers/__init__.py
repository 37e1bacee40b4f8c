#!/usr/bin/env python3
#
# SPDX-License-Identifier: MIT
#
# This file is formatted with Python Black
"""
The device drivers. Each module in this package registers its driver with
:func:`razerbag.driver.razerbag_driver`, see
:func:`razerbag.driver.load_drivers`.
"""
