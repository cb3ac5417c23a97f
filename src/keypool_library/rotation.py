# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Round-robin rotation cursor.

The cursor holds the position of the last consuming selection. It carries no
lock of its own: the owning ``KeyPool`` reads and advances it inside the pool
lock so that a scan and its advance happen as one step.
"""

from typing import Iterator


class RotationCursor:
    def __init__(self, position: int = -1):
        self.position = position

    def scan_order(self, size: int) -> Iterator[int]:
        """Yield every index of a ``size``-long sequence once, starting just past the cursor."""
        if size <= 0:
            return
        start = (self.position + 1) % size
        for offset in range(size):
            yield (start + offset) % size

    def advance_to(self, position: int) -> None:
        self.position = position

    def __repr__(self) -> str:
        return f"RotationCursor(position={self.position})"
