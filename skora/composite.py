"""Flattening of a LayerStack into the merged image.

Compositing follows the W3C "Compositing and Blending Level 1" source-over
formulas with non-premultiplied inputs::

    Cs' = (1 - ab) * Cs + ab * B(Cb, Cs)
    ao  = as + ab * (1 - as)
    co  = as * Cs' + ab * Cb * (1 - as)        (premultiplied result)

where ``as`` is the layer alpha times its opacity. Only separable blend
modes are defined; ``addition`` is approximated by a clamped sum.
"""

import logging
from typing import Callable, Dict

import numpy as np

from skora.models import BlendMode, DecodedImage, LayerStack

logger = logging.getLogger(__name__)

BlendFunc = Callable[[np.ndarray, np.ndarray], np.ndarray]


def _normal(cb, cs):
    return cs


def _multiply(cb, cs):
    return cb * cs


def _screen(cb, cs):
    return cb + cs - cb * cs


def _hard_light(cb, cs):
    return np.where(cs <= 0.5, _multiply(cb, 2.0 * cs), _screen(cb, 2.0 * cs - 1.0))


def _overlay(cb, cs):
    return _hard_light(cs, cb)


def _darken(cb, cs):
    return np.minimum(cb, cs)


def _lighten(cb, cs):
    return np.maximum(cb, cs)


def _color_dodge(cb, cs):
    with np.errstate(divide='ignore', invalid='ignore'):
        dodged = np.minimum(1.0, cb / (1.0 - cs))
    return np.where(cb == 0.0, 0.0, np.where(cs >= 1.0, 1.0, dodged))


def _color_burn(cb, cs):
    with np.errstate(divide='ignore', invalid='ignore'):
        burned = 1.0 - np.minimum(1.0, (1.0 - cb) / cs)
    return np.where(cb >= 1.0, 1.0, np.where(cs <= 0.0, 0.0, burned))


def _soft_light(cb, cs):
    d = np.where(cb <= 0.25, ((16.0 * cb - 12.0) * cb + 4.0) * cb, np.sqrt(cb))
    return np.where(cs <= 0.5,
                    cb - (1.0 - 2.0 * cs) * cb * (1.0 - cb),
                    cb + (2.0 * cs - 1.0) * (d - cb))


def _difference(cb, cs):
    return np.abs(cb - cs)


def _exclusion(cb, cs):
    return cb + cs - 2.0 * cb * cs


def _addition(cb, cs):
    return np.minimum(1.0, cb + cs)


BLEND_FUNCTIONS: Dict[BlendMode, BlendFunc] = {
    BlendMode.NORMAL: _normal,
    BlendMode.MULTIPLY: _multiply,
    BlendMode.SCREEN: _screen,
    BlendMode.OVERLAY: _overlay,
    BlendMode.DARKEN: _darken,
    BlendMode.LIGHTEN: _lighten,
    BlendMode.COLOR_DODGE: _color_dodge,
    BlendMode.COLOR_BURN: _color_burn,
    BlendMode.HARD_LIGHT: _hard_light,
    BlendMode.SOFT_LIGHT: _soft_light,
    BlendMode.DIFFERENCE: _difference,
    BlendMode.EXCLUSION: _exclusion,
    BlendMode.ADDITION: _addition,
}


def blend_over(color: np.ndarray, alpha: np.ndarray, source: np.ndarray,
               opacity: float, mode: BlendMode = BlendMode.NORMAL) -> None:
    """Composite ``source`` (uint8 RGBA) onto a backdrop region in place.

    ``color`` (h, w, 3) and ``alpha`` (h, w, 1) hold the backdrop as
    non-premultiplied floats in 0..1 and are overwritten with the result.
    """
    cs = source[..., :3].astype(np.float64) / 255.0
    as_ = source[..., 3:4].astype(np.float64) / 255.0 * opacity
    cb = color
    ab = alpha

    mixed = (1.0 - ab) * cs + ab * BLEND_FUNCTIONS[mode](cb, cs)
    ao = as_ + ab * (1.0 - as_)
    co = as_ * mixed + ab * cb * (1.0 - as_)

    with np.errstate(divide='ignore', invalid='ignore'):
        color[...] = np.where(ao > 0.0, co / ao, 0.0)
    alpha[...] = ao


def to_uint8(values: np.ndarray) -> np.ndarray:
    return np.clip(np.floor(values * 255.0 + 0.5), 0, 255).astype(np.uint8)


def composite_stack(stack: LayerStack) -> DecodedImage:
    """Flatten every visible layer bottom-to-top onto a transparent canvas.

    Layers are clipped to the canvas; offsets outside it (including
    negative ones) only shift which part of the layer lands on it.
    """
    height, width = stack.height, stack.width
    color = np.zeros((height, width, 3), dtype=np.float64)
    alpha = np.zeros((height, width, 1), dtype=np.float64)

    for desc, image in reversed(stack.layers):
        if not desc.visible or desc.opacity <= 0.0:
            continue
        # Intersection of the layer rectangle with the canvas
        x0, y0 = max(desc.x, 0), max(desc.y, 0)
        x1 = min(desc.x + image.width, width)
        y1 = min(desc.y + image.height, height)
        if x0 >= x1 or y0 >= y1:
            logger.debug('Layer %r lies entirely outside the canvas', desc.name)
            continue
        source = image.pixels[y0 - desc.y:y1 - desc.y, x0 - desc.x:x1 - desc.x]
        blend_over(color[y0:y1, x0:x1], alpha[y0:y1, x0:x1], source,
                   desc.opacity, desc.blend_mode)

    pixels = np.empty((height, width, 4), dtype=np.uint8)
    pixels[..., :3] = to_uint8(color)
    pixels[..., 3:] = to_uint8(alpha)
    return DecodedImage(width, height, pixels, has_alpha=True)
