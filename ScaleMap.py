#!/usr/bin/env python3

"""
Scale Map: bidirectional mapping between absolute values and relative positions.

A scale maps a value in its own absolute domain (Hz, dB, pixels, MIDI steps) to a relative
position that is 0 at the scale's start and 1 at its end, and back. Two scales composed through
that shared relative space convert directly between their absolute domains, e.g. a slider
position and the parameter it drives.

Out-of-domain input is extrapolated, never rejected: non-finite results (NaN, +/-inf) propagate
under IEEE-754 rules instead of raising.

Table of Contents
   1. Setup
   2. Numeric Conversion
   3. Scale Contract
   4. Linear Scales
   5. Logarithmic Scale
   6. Broken Scale
   7. Shared Scale
   8. Converter
   9. Configuration
"""

# ----------------------1. Setup----------------------------

import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from itertools import chain
from typing import Callable

import numpy as np
import toml

logger = logging.getLogger(__name__)

TEN = 10
ORIGIN = (0.0, 0.0)
UNIT = (1.0, 1.0)


def div(numerator, denominator) -> float:
    """Division with IEEE-754 semantics: x/0 is +/-inf, 0/0 is NaN."""
    with np.errstate(all='ignore'):
        return float(np.float64(numerator) / np.float64(denominator))


def log10(x) -> float:
    """log10 that yields -inf at 0 and NaN below it."""
    with np.errstate(all='ignore'):
        return float(np.log10(np.float64(x)))


def pow10(p) -> float:
    with np.errstate(all='ignore'):
        return float(np.power(np.float64(TEN), np.float64(p)))


# ----------------------2. Numeric Conversion----------------------------


def to_float(value) -> float:
    """Widen any supported numeric value to the pivot float (IEEE-754 double)."""
    return float(value)


def saturating_int(lo: int, hi: int):
    """Float-to-int cast that truncates toward zero and saturates at [lo, hi]; NaN casts to 0."""
    def narrow(f: float) -> int:
        f = float(f)
        if f != f:
            return 0
        if f <= lo:
            return lo
        if f >= hi:
            return hi
        return int(f)
    return narrow


def narrow_f32(f: float):
    with np.errstate(all='ignore'):
        return np.float32(f)


@dataclass(frozen=True)
class NumType:
    """A numeric representation scales can work over, defined by its narrowing cast from the pivot float."""
    name: str
    dtype: str
    narrow: Callable[[float], object] = field(repr=False)
    is_integral: bool = False

    def to_float(self, value) -> float:
        return to_float(value)

    def from_float(self, f: float):
        return self.narrow(f)


def int_type(name: str, dtype: str):
    info = np.iinfo(dtype)
    return NumType(name, dtype, saturating_int(int(info.min), int(info.max)), is_integral=True)


class NumTypes:
    F64 = NumType('f64', 'float64', float)
    F32 = NumType('f32', 'float32', narrow_f32)
    I8 = int_type('i8', 'int8')
    I16 = int_type('i16', 'int16')
    I32 = int_type('i32', 'int32')
    I64 = int_type('i64', 'int64')
    U8 = int_type('u8', 'uint8')
    U16 = int_type('u16', 'uint16')
    U32 = int_type('u32', 'uint32')
    U64 = int_type('u64', 'uint64')

    @classmethod
    def all(cls) -> list[NumType]:
        return [v for v in vars(cls).values() if isinstance(v, NumType)]

    @classmethod
    def named(cls, name: str) -> NumType:
        """Look up by short name ('u8') or numpy dtype name ('uint8')."""
        for num in cls.all():
            if name.lower() in (num.name, num.dtype):
                return num
        raise ValueError(f'Unrecognized numeric type: {name}')

    @classmethod
    def of(cls, value) -> NumType:
        """The numeric type of a sample value: Python int is i64, float is f64, numpy scalars keep their width."""
        if isinstance(value, (bool, np.bool_)):
            raise TypeError(f'Not a numeric scale value: {value!r}')
        if isinstance(value, np.generic):
            try:
                return cls.named(np.dtype(type(value)).name)
            except ValueError:
                raise TypeError(f'Unsupported numeric width: {value!r}') from None
        if isinstance(value, int):
            return cls.I64
        if isinstance(value, float):
            return cls.F64
        raise TypeError(f'Not a numeric scale value: {value!r}')


def from_float(f: float, num: NumType = None):
    """Narrow the pivot float into the given numeric type (f64 by default)."""
    return (num or NumTypes.F64).from_float(f)


def to_int(f: float, num: NumType = None) -> int:
    num = num or NumTypes.I64
    if not num.is_integral:
        raise ValueError(f'Not an integral type: {num.name}')
    return num.from_float(f)


# ----------------------3. Scale Contract----------------------------


class Scale(ABC):
    """
    Maps an absolute value to a relative position and back.
    Relative positions are floats, 0 at the start of the scale and 1 at its end, but never limited to that:
    values outside [min, max] extrapolate past 0 or 1.

    Only the four abstract methods are per-variant; everything else is derived from them.
    """

    @abstractmethod
    def to_relative(self, absolute) -> float:
        """Position of an absolute value."""

    @abstractmethod
    def to_absolute(self, relative: float):
        """Absolute value at a position."""

    @abstractmethod
    def min(self):
        """Lower bound as declared, regardless of inversion."""

    @abstractmethod
    def max(self):
        """Upper bound as declared, regardless of inversion."""

    def to_clamped_relative(self, absolute) -> float:
        hi, lo = self.max(), self.min()
        if absolute > hi:
            absolute = hi
        elif absolute < lo:
            absolute = lo
        return self.to_relative(absolute)

    def to_clamped_absolute(self, relative: float):
        relative = to_float(relative)
        if relative > 1.0:
            relative = 1.0
        elif relative < 0.0:
            relative = 0.0
        return self.to_absolute(relative)

    def to_relative_delta(self, absolute_delta, relative_pos: float) -> float:
        """
        Relative step that corresponds to moving by absolute_delta from relative_pos.
        Computed by round trip, so curved scales get the actual finite difference, not a tangent.
        """
        absolute_pos = self.to_absolute(relative_pos)
        return self.to_relative(absolute_pos + absolute_delta) - to_float(relative_pos)

    def to_absolute_delta(self, relative_delta: float, absolute_pos):
        """Absolute step that corresponds to moving by relative_delta from absolute_pos."""
        relative_pos = self.to_relative(absolute_pos)
        return self.to_absolute(relative_pos + to_float(relative_delta)) - absolute_pos

    def convert(self, absolute, other: 'Scale'):
        """Move a value from this scale's domain into other's domain through the shared relative position."""
        return other.to_absolute(self.to_relative(absolute))

    def value_range(self):
        return self.min(), self.max()


def convert(absolute, from_scale: Scale, to_scale: Scale):
    return from_scale.convert(absolute, to_scale)


# ----------------------4. Linear Scales----------------------------


def rasterizer(step):
    """Quantizer rounding values half-up to the nearest multiple of step, keeping their numeric type."""
    def raster(value):
        return from_float(np.floor(div(to_float(value), step) + 0.5) * step, NumTypes.of(value))
    return raster


@dataclass(frozen=True)
class LinearScale(Scale):
    """Affine map of [min_value, max_value] onto [0, 1], or onto [1, 0] when inverted."""
    min_value: object
    max_value: object
    is_inverted: bool = False
    raster: Callable = None
    """optional quantization applied to absolute values going in and coming out"""
    num: NumType = None
    """numeric type of absolute values, inferred from min_value when not given"""
    min_as_float: float = field(init=False, repr=False)
    full_range: float = field(init=False, repr=False)

    def __post_init__(self):
        if self.num is None:
            object.__setattr__(self, 'num', NumTypes.of(self.min_value))
        min_as_float = to_float(self.min_value)
        object.__setattr__(self, 'min_as_float', min_as_float)
        # zero range is not guarded: it yields NaN/inf positions
        object.__setattr__(self, 'full_range', to_float(self.max_value) - min_as_float)

    def to_relative(self, absolute) -> float:
        if self.raster is not None:
            absolute = self.raster(absolute)
        relative = div(to_float(absolute) - self.min_as_float, self.full_range)
        return 1.0 - relative if self.is_inverted else relative

    def to_absolute(self, relative: float):
        relative = to_float(relative)
        if self.is_inverted:
            relative = 1.0 - relative
        absolute = self.num.from_float(self.min_as_float + relative * self.full_range)
        return self.raster(absolute) if self.raster is not None else absolute

    def min(self):
        return self.min_value

    def max(self):
        return self.max_value

    def inverted(self):
        return replace(self, is_inverted=not self.is_inverted)


@dataclass(frozen=True)
class DynamicLinearScale(Scale):
    """
    Linear scale whose bounds are looked up on every call, for domains whose limits move
    (a zoomable view, a parameter whose range depends on another).
    """
    min_fn: Callable[[], object]
    max_fn: Callable[[], object]
    is_inverted: bool = False
    raster: Callable = None
    num: NumType = None

    def snapshot(self) -> LinearScale:
        """Fixed scale over the bounds as they are now; each bound is read exactly once."""
        return LinearScale(self.min_fn(), self.max_fn(), self.is_inverted, self.raster, self.num)

    def to_relative(self, absolute) -> float:
        return self.snapshot().to_relative(absolute)

    def to_absolute(self, relative: float):
        return self.snapshot().to_absolute(relative)

    def min(self):
        return self.min_fn()

    def max(self):
        return self.max_fn()

    def inverted(self):
        return replace(self, is_inverted=not self.is_inverted)


# ----------------------5. Logarithmic Scale----------------------------


@dataclass(frozen=True)
class LogarithmicScale(Scale):
    """
    Equal ratios take equal lengths: a linear scale over log10 of the bounds.
    Values <= 0 have no position: 0 maps to -inf, negatives to NaN. Clamp first where that matters.
    """
    min_value: object
    max_value: object
    is_inverted: bool = False
    num: NumType = None
    delegate: LinearScale = field(init=False, repr=False)

    def __post_init__(self):
        if self.num is None:
            object.__setattr__(self, 'num', NumTypes.of(self.min_value))
        object.__setattr__(self, 'delegate', LinearScale(log10(self.min_value), log10(self.max_value),
                                                         is_inverted=self.is_inverted, num=NumTypes.F64))

    def to_relative(self, absolute) -> float:
        return self.delegate.to_relative(log10(absolute))

    def to_absolute(self, relative: float):
        return self.num.from_float(pow10(self.delegate.to_absolute(relative)))

    def min(self):
        return self.min_value

    def max(self):
        return self.max_value

    def inverted(self):
        return replace(self, is_inverted=not self.is_inverted)


# ----------------------6. Broken Scale----------------------------

Breakpoint = tuple[float, float]


def is_ascending(points) -> bool:
    closed = list(chain((ORIGIN,), points, (UNIT,)))
    return all(x0 <= x1 and y0 <= y1 for (x0, y0), (x1, y1) in zip(closed, closed[1:]))


@dataclass(frozen=True)
class BrokenScale(Scale):
    """
    Piecewise-linear scale: a linear scale over [min_value, max_value] whose positions are bent
    through a polyline, giving some sub-ranges more travel than others (e.g. fine control near 0 dB on a fader).

    Each breakpoint (x, y) says: at position x of this scale, show what the plain linear scale shows at y.
    The polyline runs from (0, 0) through the breakpoints to (1, 1). Breakpoints must ascend on both axes;
    this is not validated, and an unordered table gives a non-monotonic or NaN mapping.
    Inversion mirrors positions on this scale (r becomes 1 - r); the breakpoints and delegate stay as given.
    """
    min_value: object
    max_value: object
    breakpoints: tuple[Breakpoint, ...] = ()
    is_inverted: bool = False
    num: NumType = None
    delegate: LinearScale = field(init=False, repr=False)

    def __post_init__(self):
        if self.num is None:
            object.__setattr__(self, 'num', NumTypes.of(self.min_value))
        points = tuple((to_float(x), to_float(y)) for x, y in self.breakpoints)
        object.__setattr__(self, 'breakpoints', points)
        object.__setattr__(self, 'delegate', LinearScale(self.min_value, self.max_value, num=self.num))
        if __debug__ and not is_ascending(points):
            logger.warning('Breakpoints %s do not ascend; mapping of [%s, %s] is not monotonic',
                           points, self.min_value, self.max_value)

    @classmethod
    def from_absolute(cls, min_value, max_value, points, is_inverted=False, num: NumType = None):
        """Build from (absolute, relative) pairs: the relative position at which each absolute value should sit."""
        delegate = LinearScale(min_value, max_value, num=num)
        breakpoints = tuple((to_float(x), delegate.to_relative(a)) for a, x in points)
        return cls(min_value, max_value, breakpoints, is_inverted=is_inverted, num=num)

    def segment(self, query: float, axis: int) -> tuple[Breakpoint, Breakpoint]:
        """The polyline segment bracketing query on the given axis (0 = x, 1 = y)."""
        if query >= 1.0:
            return (self.breakpoints[-1] if self.breakpoints else ORIGIN), UNIT
        lower = ORIGIN
        for point in chain(self.breakpoints, (UNIT,)):
            if point[axis] < query:
                lower = point
            else:
                return lower, point
        return lower, UNIT

    def broken_y(self, rel_x: float) -> float:
        """Delegate position for a position on this scale."""
        (x0, y0), (x1, y1) = self.segment(rel_x, 0)
        if rel_x == x1:
            return y1
        # y = m * x + t
        m = div(y1 - y0, x1 - x0)
        t = y0 - m * x0
        return m * rel_x + t

    def broken_x(self, rel_y: float) -> float:
        """Position on this scale for a delegate position."""
        (x0, y0), (x1, y1) = self.segment(rel_y, 1)
        if rel_y == y1:
            return x1
        m = div(y1 - y0, x1 - x0)
        t = y0 - m * x0
        return div(rel_y - t, m)

    def to_relative(self, absolute) -> float:
        relative = self.broken_x(self.delegate.to_relative(absolute))
        return 1.0 - relative if self.is_inverted else relative

    def to_absolute(self, relative: float):
        relative = to_float(relative)
        if self.is_inverted:
            relative = 1.0 - relative
        return self.delegate.to_absolute(self.broken_y(relative))

    def min(self):
        return self.delegate.min()

    def max(self):
        return self.delegate.max()

    def inverted(self):
        return replace(self, is_inverted=not self.is_inverted)


# ----------------------7. Shared Scale----------------------------


class LockedScale(Scale):
    """
    Mutable, thread-shareable handle on an immutable scale.
    Each call is forwarded to the current inner scale while holding a lock for that call only;
    swap() replaces the inner scale for subsequent calls.
    """

    def __init__(self, inner: Scale):
        self._inner = inner
        self._lock = threading.Lock()

    def __repr__(self):
        return f'LockedScale({self._inner!r})'

    @property
    def inner(self) -> Scale:
        with self._lock:
            return self._inner

    def swap(self, inner: Scale) -> Scale:
        """Replace the inner scale, returning the previous one."""
        with self._lock:
            previous, self._inner = self._inner, inner
        return previous

    def _forward(self, method: str, *args):
        with self._lock:
            return getattr(self._inner, method)(*args)

    def to_relative(self, absolute) -> float:
        return self._forward('to_relative', absolute)

    def to_absolute(self, relative: float):
        return self._forward('to_absolute', relative)

    def min(self):
        return self._forward('min')

    def max(self):
        return self._forward('max')

    def to_clamped_relative(self, absolute) -> float:
        return self._forward('to_clamped_relative', absolute)

    def to_clamped_absolute(self, relative: float):
        return self._forward('to_clamped_absolute', relative)

    def to_relative_delta(self, absolute_delta, relative_pos: float) -> float:
        return self._forward('to_relative_delta', absolute_delta, relative_pos)

    def to_absolute_delta(self, relative_delta: float, absolute_pos):
        return self._forward('to_absolute_delta', relative_delta, absolute_pos)

    def value_range(self):
        return self._forward('value_range')


# ----------------------8. Converter----------------------------


def clamp(value, lo, hi):
    """Clamp to [lo, hi]; values that don't compare (NaN) pass through."""
    if lo > value:
        return lo
    if hi < value:
        return hi
    return value


@dataclass(frozen=True)
class Converter:
    """
    Converts between two absolute domains through their scales' shared relative position.
    The external scale is what the user manipulates (a slider), the internal one what it controls (a parameter).
    """
    external: Scale
    internal: Scale

    def convert(self, external_value):
        return self.internal.to_absolute(self.external.to_relative(external_value))

    def convert_back(self, internal_value):
        return self.external.to_absolute(self.internal.to_relative(internal_value))

    def add_external(self, external_delta, internal_value):
        """Apply a step measured in external units to an internal value."""
        return self.convert(self.convert_back(internal_value) + external_delta)

    def add_internal(self, internal_delta, external_value):
        """Apply a step measured in internal units to an external value."""
        return self.convert_back(self.convert(external_value) + internal_delta)

    def external_min(self):
        return self.external.min()

    def external_max(self):
        return self.external.max()

    def internal_min(self):
        return self.internal.min()

    def internal_max(self):
        return self.internal.max()

    def convert_clamped(self, external_value):
        return clamp(self.convert(external_value), self.internal_min(), self.internal_max())

    def convert_back_clamped(self, internal_value):
        return clamp(self.convert_back(internal_value), self.external_min(), self.external_max())

    def add_external_clamped(self, external_delta, internal_value):
        return clamp(self.add_external(external_delta, internal_value), self.internal_min(), self.internal_max())

    def add_internal_clamped(self, internal_delta, external_value):
        return clamp(self.add_internal(internal_delta, external_value), self.external_min(), self.external_max())

    def reversed(self):
        return Converter(self.internal, self.external)


# ----------------------9. Configuration----------------------------


class Scales:
    Unit = LinearScale(0.0, 1.0)
    Percent = LinearScale(0.0, 100.0)
    Midi = LinearScale(0, 127, num=NumTypes.U8)
    AudioHz = LogarithmicScale(20.0, 20_000.0)
    FaderDB = BrokenScale.from_absolute(-120.0, 12.0, [(-48.0, 0.25), (-18.0, 0.5), (0.0, 0.75)])

    kinds = {
        'linear': LinearScale,
        'log': LogarithmicScale,
        'logarithmic': LogarithmicScale,
        'broken': BrokenScale,
    }

    @classmethod
    def from_dict(cls, scale_def: dict) -> Scale:
        """
        Scale from a definition table:
        kind (linear | log | broken, default linear), min, max, inverted, num (numeric type name),
        step (linear only, quantization), breakpoints as (x, y) or absolute_breakpoints as
        (absolute, relative) pairs (broken only).
        """
        scale_def = dict(scale_def)
        kind = scale_def.pop('kind', 'linear').lower()
        scale_cls = cls.kinds.get(kind)
        if scale_cls is None:
            raise ValueError(f'Unrecognized scale kind: {kind}')
        kwargs = {
            'is_inverted': bool(scale_def.pop('inverted', False)),
            'num': NumTypes.named(scale_def.pop('num')) if 'num' in scale_def else None,
        }
        min_value, max_value = scale_def.pop('min'), scale_def.pop('max')
        if scale_cls is LinearScale and 'step' in scale_def:
            kwargs['raster'] = rasterizer(scale_def.pop('step'))
        if scale_cls is BrokenScale:
            if 'absolute_breakpoints' in scale_def:
                return BrokenScale.from_absolute(min_value, max_value, scale_def.pop('absolute_breakpoints'),
                                                 **cls._check_empty(scale_def, kwargs))
            kwargs['breakpoints'] = tuple(tuple(p) for p in scale_def.pop('breakpoints', ()))
        return scale_cls(min_value, max_value, **cls._check_empty(scale_def, kwargs))

    @staticmethod
    def _check_empty(leftover: dict, kwargs: dict) -> dict:
        if leftover:
            raise ValueError(f'Unrecognized scale keys: {", ".join(sorted(leftover))}')
        return kwargs


@dataclass(frozen=True)
class ScaleSet:
    """Named scales, and converters between pairs of them, as loaded from a TOML definition."""
    name: str
    scales: dict[str, Scale] = field(default_factory=dict)
    converters: dict[str, Converter] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, set_def: dict):
        scales = {key: Scales.from_dict(sc_def) for key, sc_def in set_def.get('scales', {}).items()}
        converters = {}
        for key, conv_def in set_def.get('converters', {}).items():
            converters[key] = Converter(cls._scale_in(scales, conv_def['external']),
                                        cls._scale_in(scales, conv_def['internal']))
        result = cls(name=set_def.get('name'), scales=scales, converters=converters)
        logger.debug('Loaded scale set %s: %d scales, %d converters', result.name, len(scales), len(converters))
        return result

    @classmethod
    def from_toml_str(cls, toml_str: str):
        return cls.from_dict(toml.loads(toml_str))

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        logger.debug('Reading scale set from %s', toml_filename)
        return cls.from_dict(toml.load(toml_filename))

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Scales-{example_name}.toml'))

    @classmethod
    def example_names(cls):
        for fn in os.listdir(cls.example_dir_path):
            if match := re.match(r'Scales-(.*)\.toml$', fn):
                yield match.group(1)

    @staticmethod
    def _scale_in(scales: dict, key: str) -> Scale:
        if key not in scales:
            raise KeyError(f'Scale not found: {key}')
        return scales[key]

    def scale(self, key: str) -> Scale:
        return self._scale_in(self.scales, key)

    def converter(self, key: str) -> Converter:
        if key not in self.converters:
            raise KeyError(f'Converter not found: {key}')
        return self.converters[key]
