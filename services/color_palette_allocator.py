"""Allocation des index de palette (color LUT), un par segmentation."""

from __future__ import annotations

import copy
import logging
from typing import Dict, List, Optional, Sequence

from config.constants import DEFAULT_COLOR_LUT

ColorLUT = List[List[float]]


class ColorPaletteAllocator:
    """Hands out the lowest free LUT index together with a private copy of the default palette."""

    def __init__(self, default_lut: Optional[Sequence[Sequence[float]]] = None) -> None:
        self._default_lut = [list(c) for c in (default_lut or DEFAULT_COLOR_LUT)]
        self._palettes: Dict[int, ColorLUT] = {}
        self.logger = logging.getLogger(__name__)

    def allocate(self) -> int:
        """Return the smallest non-negative index not assigned to a live segmentation."""
        index = 0
        while index in self._palettes:
            index += 1
        # Deep copy : aucune segmentation ne partage une palette mutable
        self._palettes[index] = copy.deepcopy(self._default_lut)
        self.logger.debug("Color LUT index allocated: %d", index)
        return index

    def release(self, index: int) -> None:
        """Free an index so a later allocate() can reuse it."""
        if self._palettes.pop(int(index), None) is None:
            self.logger.warning("Color LUT index %d released but was not allocated", index)
            return
        self.logger.debug("Color LUT index released: %d", index)

    def palette(self, index: int) -> ColorLUT:
        """Palette owned by an allocated index."""
        return self._palettes[int(index)]

    def is_allocated(self, index: int) -> bool:
        return int(index) in self._palettes

    def allocated(self) -> List[int]:
        return sorted(self._palettes)
