"""Conversion settings, loadable from JSON."""

import json
from dataclasses import dataclass, field
from typing import Dict

from skora.models import BlendMode
from skora.ora import THUMBNAIL_SIZE
from skora.tiff.layers import LAYER_TABLE_TAG, BlendModeTable


@dataclass
class ConvertConfig:
    """Settings shared by single-file and batch conversion.

    Allows teaching the decoder new blend codes, or a different private tag
    id, without modifying source code.
    """

    layer_table_tag: int = LAYER_TABLE_TAG
    blend_modes: Dict[int, BlendMode] = field(default_factory=dict)
    workers: int = 1
    thumbnail_size: int = THUMBNAIL_SIZE
    background_layer: bool = True

    @classmethod
    def default(cls) -> 'ConvertConfig':
        """Return the built-in defaults."""
        return cls()

    @classmethod
    def from_json(cls, path) -> 'ConvertConfig':
        """Load settings from a JSON file and merge with defaults.

        JSON format::

            {
              "layer_table_tag": 65000,
              "blend_modes": {"13": "multiply", "200": "svg:screen"},
              "workers": 4,
              "thumbnail_size": 256,
              "background_layer": true
            }

        All keys are optional; omitted keys inherit the defaults. Blend codes
        are *added* to the built-in table, overriding codes already present.
        """
        with open(str(path), 'r') as f:
            data = json.load(f)

        config = cls.default()

        for raw_code, name in data.get('blend_modes', {}).items():
            try:
                code = int(raw_code)
            except ValueError:
                raise ValueError(f'Blend mode code {raw_code!r} is not an integer') from None
            if not 0 <= code <= 255:
                raise ValueError(f'Blend mode code {code} does not fit in a byte')
            config.blend_modes[code] = BlendMode.from_name(name)

        if 'layer_table_tag' in data:
            config.layer_table_tag = int(data['layer_table_tag'])
        if 'workers' in data:
            config.workers = max(1, int(data['workers']))
        if 'thumbnail_size' in data:
            config.thumbnail_size = int(data['thumbnail_size'])
            if config.thumbnail_size <= 0:
                raise ValueError(f'thumbnail_size must be positive, got {config.thumbnail_size}')
        if 'background_layer' in data:
            config.background_layer = bool(data['background_layer'])

        return config

    def blend_table(self) -> BlendModeTable:
        return BlendModeTable(self.blend_modes)
