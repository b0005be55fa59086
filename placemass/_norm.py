"""
_norm.py
========
Color normalization of an aggregated mass-per-edge vector.

Public API
----------
  ColorNormOptions(log_scaling=False, min_value=None, max_value=None,
                   mask_value=None, clip_under=False, clip_over=False,
                   log_absolute_threshold=1.0, log_relative_span=1e5)

  ColorNorm(min_value=0.0, max_value=1.0, log_scaling=False, mask_value=None)
      .autoscale(values)
      .normalize(values) -> np.ndarray in [0, 1] (NaN where masked)

  normalize_masses(values, options) -> (ColorNorm, corrected_copy)

  ColorMap(colors, under_color, over_color, mask_color, clip_under, clip_over)
      (norm, values) -> list[str]   '#rrggbb' per value

Pipeline order
--------------
``normalize_masses`` runs four stages, each depending on whether the previous
value was automatic or user given:

  1. autoscale over finite values
  2. log:    if min <= 0, min = threshold if max > threshold
                          else max / span
     linear: min = 0
  3. explicit min_value / max_value / mask_value overrides
  4. log with autoscaled min <= 0:
       no min_value and no clip_under -> warning, zeros shown as masked
       otherwise                      -> every value <= 0 becomes min / 2
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from placemass._logging import log_masked_log_values

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColorNormOptions:
    log_scaling: bool = False                 # Map values on a log10 scale
    min_value: Optional[float] = None         # Domain minimum; None autoscales
    max_value: Optional[float] = None         # Domain maximum; None autoscales
    mask_value: Optional[float] = None        # Values equal to this are masked
    clip_under: bool = False                  # Show values below min in the first color
    clip_over: bool = False                   # Show values above max in the last color
    log_absolute_threshold: float = 1.0       # Log min when max exceeds it (count data)
    log_relative_span: float = 1e5            # Log min = max / span otherwise (relative data)

    def __post_init__(self):
        if self.log_relative_span <= 0:
            raise ValueError(
                f"log_relative_span must be positive, got {self.log_relative_span!r}."
            )


class ColorNorm:
    """
    A numeric domain mapped onto [0, 1], linearly or on a log10 scale.

    Attributes
    ----------
    min_value, max_value : float
    log_scaling : bool
    mask_value : float or None
        Values equal to it are masked (mapped to NaN).
    """

    def __init__(
        self,
        min_value: float = 0.0,
        max_value: float = 1.0,
        log_scaling: bool = False,
        mask_value: Optional[float] = None,
    ) -> None:
        self.min_value = float(min_value)
        self.max_value = float(max_value)
        self.log_scaling = log_scaling
        self.mask_value = mask_value

    def __repr__(self) -> str:
        return (
            f"ColorNorm(min_value={self.min_value!r}, max_value={self.max_value!r}, "
            f"log_scaling={self.log_scaling!r}, mask_value={self.mask_value!r})"
        )

    def autoscale(self, values) -> None:
        """Set min and max to the range of the finite *values* (0, 0 if none)."""
        arr = np.asarray(values, dtype=np.float64)
        finite = arr[np.isfinite(arr)]
        if finite.size == 0:
            self.min_value = 0.0
            self.max_value = 0.0
        else:
            self.min_value = float(finite.min())
            self.max_value = float(finite.max())

    def mask(self, values) -> np.ndarray:
        """Boolean mask of the values that cannot be placed in the domain."""
        arr = np.asarray(values, dtype=np.float64)
        masked = ~np.isfinite(arr)
        if self.mask_value is not None:
            masked |= arr == self.mask_value
        if self.log_scaling:
            masked |= arr <= 0.0
        return masked

    def normalize(self, values) -> np.ndarray:
        """
        Map *values* to their position in the domain.

        Values inside the domain map to [0, 1], values below it to < 0 and
        values above it to > 1.  Masked values map to NaN.  A degenerate
        domain (max <= min, or min <= 0 under log scaling) maps every
        unmasked value to 0.
        """
        arr = np.asarray(values, dtype=np.float64)
        masked = self.mask(arr)
        out = np.zeros(arr.shape, dtype=np.float64)
        valid = ~masked

        lo, hi = self.min_value, self.max_value
        if self.log_scaling:
            if lo > 0.0 and hi > lo:
                lo_l, hi_l = np.log10(lo), np.log10(hi)
                out[valid] = (np.log10(arr[valid]) - lo_l) / (hi_l - lo_l)
        elif hi > lo:
            out[valid] = (arr[valid] - lo) / (hi - lo)

        out[masked] = np.nan
        return out


def normalize_masses(
    values, options: Optional[ColorNormOptions] = None
) -> Tuple[ColorNorm, np.ndarray]:
    """
    Build the color norm for *values* and the corrected copy to color with.

    Parameters
    ----------
    values : array_like of float
        Aggregated mass per edge.  Not modified.
    options : ColorNormOptions or None
        None uses the defaults, a linear scale anchored at 0.

    Returns
    -------
    (ColorNorm, np.ndarray)

    Examples
    --------
    >>> norm, _ = normalize_masses([0.0, 2.0], ColorNormOptions(log_scaling=True))
    >>> norm.min_value
    1.0
    """
    if options is None:
        options = ColorNormOptions()
    working = np.array(values, dtype=np.float64)
    norm = ColorNorm(log_scaling=options.log_scaling, mask_value=None)

    norm.autoscale(working)
    auto_min = norm.min_value

    if options.log_scaling:
        if norm.min_value <= 0.0:
            if norm.max_value > options.log_absolute_threshold:
                norm.min_value = float(options.log_absolute_threshold)
            else:
                norm.min_value = norm.max_value / options.log_relative_span
    else:
        norm.min_value = 0.0

    if options.min_value is not None:
        norm.min_value = float(options.min_value)
    if options.max_value is not None:
        norm.max_value = float(options.max_value)
    if options.mask_value is not None:
        norm.mask_value = float(options.mask_value)

    if options.log_scaling and auto_min <= 0.0:
        if options.min_value is None and not options.clip_under:
            log_masked_log_values(norm.min_value)
        else:
            working[working <= 0.0] = norm.min_value / 2.0

    return norm, working


# ============================================================================ #
# Color map
# ============================================================================ #


def _parse_color(color: str) -> Tuple[int, int, int]:
    s = color.lstrip("#")
    if len(s) != 6:
        raise ValueError(f"Colors must be given as '#rrggbb', got {color!r}.")
    return int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16)


def _format_color(rgb) -> str:
    return "#{:02x}{:02x}{:02x}".format(*(int(round(c)) for c in rgb))


class ColorMap:
    """
    Linear gradient through a list of colors.

    Parameters
    ----------
    colors : sequence of str
        At least one '#rrggbb' color; position 0 maps to the first and
        position 1 to the last, evenly spaced in between.
    under_color, over_color, mask_color : str
        Colors for positions below 0, above 1, and NaN.
    clip_under, clip_over : bool
        Use the first / last gradient color instead of the under / over color.
    """

    def __init__(
        self,
        colors: Sequence[str] = ("#81bfff", "#c040be", "#000000"),
        under_color: str = "#00ffff",
        over_color: str = "#ff00ff",
        mask_color: str = "#dfdfdf",
        clip_under: bool = False,
        clip_over: bool = False,
    ) -> None:
        if len(colors) == 0:
            raise ValueError("ColorMap needs at least one color.")
        self.colors = list(colors)
        self._rgb = np.array([_parse_color(c) for c in self.colors], dtype=np.float64)
        self.under_color = under_color
        self.over_color = over_color
        self.mask_color = mask_color
        self.clip_under = clip_under
        self.clip_over = clip_over
        for c in (under_color, over_color, mask_color):
            _parse_color(c)

    @classmethod
    def from_options(cls, options: ColorNormOptions, **kwargs) -> "ColorMap":
        """Color map taking its clipping flags from *options*."""
        return cls(clip_under=options.clip_under, clip_over=options.clip_over, **kwargs)

    def color(self, position: float) -> str:
        """Color of a single normalized position."""
        if np.isnan(position):
            return self.mask_color
        if position < 0.0:
            if not self.clip_under:
                return self.under_color
            position = 0.0
        if position > 1.0:
            if not self.clip_over:
                return self.over_color
            position = 1.0

        n = len(self._rgb)
        if n == 1:
            return _format_color(self._rgb[0])
        scaled = position * (n - 1)
        lo = min(int(np.floor(scaled)), n - 2)
        frac = scaled - lo
        rgb = self._rgb[lo] * (1.0 - frac) + self._rgb[lo + 1] * frac
        return _format_color(rgb)

    def __call__(self, norm: ColorNorm, values) -> List[str]:
        return [self.color(p) for p in norm.normalize(values)]
