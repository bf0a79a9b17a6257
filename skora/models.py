"""Data models shared by the decoder, the ORA writer and the converter."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np


class BlendMode(Enum):
    """Layer blend modes, valued by their Open Raster ``composite-op``."""
    NORMAL = 'svg:src-over'
    MULTIPLY = 'svg:multiply'
    SCREEN = 'svg:screen'
    OVERLAY = 'svg:overlay'
    DARKEN = 'svg:darken'
    LIGHTEN = 'svg:lighten'
    COLOR_DODGE = 'svg:color-dodge'
    COLOR_BURN = 'svg:color-burn'
    HARD_LIGHT = 'svg:hard-light'
    SOFT_LIGHT = 'svg:soft-light'
    DIFFERENCE = 'svg:difference'
    EXCLUSION = 'svg:exclusion'
    ADDITION = 'svg:plus'

    @property
    def label(self) -> str:
        """Short lowercase name, e.g. ``'color-dodge'``."""
        return self.name.lower().replace('_', '-')

    @classmethod
    def from_name(cls, name: str) -> 'BlendMode':
        """Look up a mode by label (``'multiply'``), enum name or composite-op."""
        key = name.strip()
        for mode in cls:
            if key in (mode.value, mode.label, mode.name):
                return mode
        raise ValueError(f'Unknown blend mode: {name!r}')


@dataclass(frozen=True)
class PixelLayout:
    """How a layer's stored samples differ from canonical RGBA."""
    swap_red_blue: bool = False   # stored as BGRA
    premultiplied: bool = False   # colour scaled by alpha
    bottom_up: bool = False       # first row is the bottom of the image


@dataclass(frozen=True)
class LayerDescriptor:
    """Metadata of one layer, in stack position ``z_order`` (0 = top)."""
    name: str
    ifd_offset: int
    x: int = 0
    y: int = 0
    opacity: float = 1.0
    visible: bool = True
    blend_mode: BlendMode = BlendMode.NORMAL
    blend_code: int = 0
    z_order: int = 0
    layout: PixelLayout = field(default_factory=PixelLayout)
    fill_color: Optional[Tuple[int, int, int, int]] = None
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True, eq=False)
class DecodedImage:
    """Canonical RGBA pixels: ``uint8`` array of shape (height, width, 4).

    Colour is never premultiplied. The array is made read-only so decoded
    images can be shared between threads without copying.
    """
    width: int
    height: int
    pixels: np.ndarray
    has_alpha: bool = False

    def __post_init__(self):
        if self.pixels.shape != (self.height, self.width, 4) or self.pixels.dtype != np.uint8:
            raise ValueError(
                f'pixels must be uint8 ({self.height}, {self.width}, 4), '
                f'got {self.pixels.dtype} {self.pixels.shape}')
        self.pixels.flags.writeable = False

    @classmethod
    def solid(cls, width: int, height: int, rgba: Tuple[int, int, int, int]) -> 'DecodedImage':
        pixels = np.empty((height, width, 4), dtype=np.uint8)
        pixels[...] = rgba
        return cls(width, height, pixels, has_alpha=rgba[3] != 255)


@dataclass
class LayerStack:
    """Fully decoded layers in stack order (index 0 = top-most layer)."""
    width: int
    height: int
    layers: List[Tuple[LayerDescriptor, DecodedImage]] = field(default_factory=list)
    thumbnail: Optional[DecodedImage] = None
    source: str = 'layer-table'  # "layer-table" | "alias" | "flat"

    def __len__(self) -> int:
        return len(self.layers)

    @property
    def descriptors(self) -> List[LayerDescriptor]:
        return [desc for desc, _ in self.layers]

    @property
    def warnings(self) -> List[str]:
        return [w for desc, _ in self.layers for w in desc.warnings]


@dataclass
class ConversionResult:
    """Result of converting a single file."""
    source_path: Path
    output_path: Path
    source_kind: Optional[str] = None
    layers_written: int = 0
    exported_layers: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    conversion_time_ms: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class BatchResult:
    """Result of a batch conversion run."""
    results: List[ConversionResult] = field(default_factory=list)
    total_files: int = 0
    files_converted: int = 0
    files_errored: int = 0
    total_time_seconds: float = 0.0
