# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""certpilot: DNS-01 certificate issuance against ACME CAs."""

__version__ = "0.1.0"
