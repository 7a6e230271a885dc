# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Network transports."""

from .base import RawResponse, TransportProtocol
from .httpx_transport import HttpxTransport

__all__ = ["HttpxTransport", "RawResponse", "TransportProtocol"]
