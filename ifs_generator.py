#!/usr/bin/env python3
"""ifs_generator.py

A lazy Iterated Function System (IFS) face enumerator that renders to SVG.

Key features:
- Sierpinski gasket, Sierpinski carpet / Menger sponge, random affine and
  random fractal-flame transform families.
- Streaming enumeration (no intermediate generation is ever materialized).
- Closed-form size and random access, so index ranges can be split between
  independent workers.
- JSON-based input configuration.
- Random config generator for experimentation.

Run:
  python ifs_generator.py render config.json output.svg
  python ifs_generator.py random out.json --seed 123
  python ifs_generator.py --help
"""

from __future__ import annotations

import argparse
import itertools
import json
import logging
import math
import os
import random
import sys
from collections.abc import Callable, Generator, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, Union, cast

import numpy as np
from numpy.typing import DTypeLike

Point = tuple[float, float]

logger = logging.getLogger("ifs_generator")


# -------------------------
# Errors / Validation
# -------------------------


class ConfigError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _as_float(x: Any, path: str) -> float:
    _require(
        isinstance(x, (int, float)) and not isinstance(x, bool),
        f"{path} must be a number",
    )
    return float(x)


def _as_int(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool), f"{path} must be an integer"
    )
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_bool(x: Any, path: str) -> bool:
    _require(isinstance(x, bool), f"{path} must be a boolean")
    return cast(bool, x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


# -------------------------
# Logging
# -------------------------


def setup_logging(level: int = logging.INFO, log_file: str | None = None) -> None:
    """Configure the ``ifs_generator`` logger.

    Log records go to stderr so they never mix with command output written to
    stdout. If ``log_file`` is given, records are also written there.
    """
    logger.setLevel(level)

    # Avoid duplicate records when main() runs more than once in a process.
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


# -------------------------
# Affine maps
# -------------------------


class Affine:
    """Affine map on d-dimensional vectors, stored as a homogeneous matrix.

    ``a @ b`` composes two maps (``b`` is applied first) and ``a @ points``
    applies the map to a single vector or to a ``(k, d)`` array of vectors.
    The matrix is read-only, so instances can be shared freely.
    """

    __slots__ = ("matrix",)

    def __init__(self, matrix: Any) -> None:
        m = np.array(matrix, copy=True)
        if m.ndim != 2 or m.shape[0] != m.shape[1] or m.shape[0] < 2:
            raise ValueError(
                f"affine matrix must be square and at least 2x2, got {m.shape}"
            )
        m.setflags(write=False)
        self.matrix = m

    @property
    def dimension(self) -> int:
        return self.matrix.shape[0] - 1

    @property
    def linear(self) -> np.ndarray:
        return self.matrix[:-1, :-1]

    @property
    def offset(self) -> np.ndarray:
        return self.matrix[:-1, -1]

    @classmethod
    def identity(cls, dimension: int, dtype: DTypeLike = np.float64) -> Affine:
        return cls(np.eye(dimension + 1, dtype=dtype))

    @classmethod
    def scale(
        cls, dimension: int, factor: float, dtype: DTypeLike = np.float64
    ) -> Affine:
        m = np.eye(dimension + 1, dtype=dtype)
        m[:dimension, :dimension] *= factor
        return cls(m)

    @classmethod
    def translation(
        cls, offset: Sequence[float] | np.ndarray, dtype: DTypeLike = np.float64
    ) -> Affine:
        v = np.asarray(offset, dtype=dtype)
        d = v.shape[0]
        m = np.eye(d + 1, dtype=dtype)
        m[:d, d] = v
        return cls(m)

    @classmethod
    def rotation(
        cls,
        dimension: int,
        angle: float,
        axis1: int,
        axis2: int,
        dtype: DTypeLike = np.float64,
    ) -> Affine:
        """Rotate by ``angle`` radians in the plane spanned by two axes.

        Positive angles turn ``axis1`` towards ``axis2``.
        """
        if axis1 == axis2 or not (
            0 <= axis1 < dimension and 0 <= axis2 < dimension
        ):
            raise ValueError(
                f"rotation needs two distinct axes in [0, {dimension}), "
                f"got ({axis1}, {axis2})"
            )
        c, s = math.cos(angle), math.sin(angle)
        m = np.eye(dimension + 1, dtype=dtype)
        m[axis1, axis1] = c
        m[axis1, axis2] = -s
        m[axis2, axis1] = s
        m[axis2, axis2] = c
        return cls(m)

    def apply(self, points: Any) -> np.ndarray:
        pts = np.asarray(points)
        return pts @ self.linear.T + self.offset

    def __matmul__(self, other: Any) -> Any:
        if isinstance(other, Affine):
            if other.dimension != self.dimension:
                raise ValueError(
                    f"cannot compose {self.dimension}-D and "
                    f"{other.dimension}-D maps"
                )
            return Affine(self.matrix @ other.matrix)
        return self.apply(other)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Affine):
            return NotImplemented
        return bool(np.array_equal(self.matrix, other.matrix))

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Affine({self.matrix.tolist()!r})"


# -------------------------
# Fractal flame variations
# -------------------------

# Variations from "The Fractal Flame Algorithm" (Draves & Reckase).
FLAME_VARIATIONS = (
    "linear",
    "sinusoidal",
    "spherical",
    "swirl",
    "horseshoe",
    "polar",
    "handkerchief",
)


def _norm_sq(v: np.ndarray) -> np.ndarray:
    return np.sum(v * v, axis=-1, keepdims=True)


def _theta(v: np.ndarray) -> np.ndarray:
    return np.arctan2(v[..., 0], v[..., 1])


def _linear(v: np.ndarray) -> np.ndarray:
    return v


def _sinusoidal(v: np.ndarray) -> np.ndarray:
    return np.sin(v)


def _spherical(v: np.ndarray) -> np.ndarray:
    r2 = _norm_sq(v)
    return np.divide(v, r2, out=np.zeros_like(v), where=r2 > 0)


def _swirl(v: np.ndarray) -> np.ndarray:
    r2 = _norm_sq(v)
    s, c = np.sin(r2), np.cos(r2)
    d = v.shape[-1]
    out = np.empty_like(v)
    for i in range(0, d - 1, 2):
        x, y = v[..., i : i + 1], v[..., i + 1 : i + 2]
        out[..., i : i + 1] = x * s - y * c
        out[..., i + 1 : i + 2] = x * c + y * s
    if d % 2:
        # odd trailing axis pairs with its predecessor
        out[..., d - 1 :] = v[..., d - 2 : d - 1] * c + v[..., d - 1 :] * s
    return out


def _horseshoe(v: np.ndarray) -> np.ndarray:
    x, y = v[..., 0], v[..., 1]
    out = v.copy()
    out[..., 0] = (x - y) * (x + y)
    out[..., 1] = 2 * x * y
    r = np.sqrt(_norm_sq(v))
    return np.divide(out, r, out=np.zeros_like(out), where=r > 0)


def _polar(v: np.ndarray) -> np.ndarray:
    out = v.copy()
    out[..., 0] = _theta(v) / np.pi
    out[..., 1] = np.sqrt(_norm_sq(v))[..., 0] - 1
    return out


def _handkerchief(v: np.ndarray) -> np.ndarray:
    theta = _theta(v)[..., None]
    r = np.sqrt(_norm_sq(v)) - 1
    out = np.empty_like(v)
    out[..., 0::2] = np.sin(theta + r)
    out[..., 1::2] = np.cos(theta - r)
    return out * r


_VARIATIONS: tuple[Callable[[np.ndarray], np.ndarray], ...] = (
    _linear,
    _sinusoidal,
    _spherical,
    _swirl,
    _horseshoe,
    _polar,
    _handkerchief,
)


@dataclass(frozen=True, eq=False)
class FlameTransform:
    """An affine map followed by a weighted blend of flame variations.

    Flame transforms are not linear, so unlike :class:`Affine` they can only
    be applied, never composed.
    """

    affine: Affine
    weights: tuple[float, ...]

    @property
    def dimension(self) -> int:
        return self.affine.dimension

    def apply(self, points: Any) -> np.ndarray:
        v = self.affine.apply(points)
        out = v * self.weights[0]
        for variation, weight in zip(_VARIATIONS[1:], self.weights[1:]):
            if weight <= 0:
                continue
            out = out + variation(v) * weight
        return out

    def __matmul__(self, points: Any) -> np.ndarray:
        if isinstance(points, (Affine, FlameTransform)):
            return NotImplemented
        return self.apply(points)


Transform = Union[Affine, FlameTransform]


# -------------------------
# Parameters
# -------------------------


@dataclass(frozen=True)
class Parameters:
    model_dimension: int = 2
    # None: same as model_dimension
    render_dimension: int | None = None
    iterations: int = 4

    # random families only
    functions: int = 3
    seed: int = 0
    pre_rotate: bool = True
    post_rotate: bool = False
    flame_coefficients: int = 3

    radius: float = 1.0
    face_limit: int = 1_000_000
    scalar: str = "float64"

    @property
    def dimension(self) -> int:
        """Dimension of the space the faces live in."""
        if self.render_dimension is None:
            return self.model_dimension
        return self.render_dimension

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.scalar)


# -------------------------
# Random affine maps
# -------------------------


def distinct_axes(rng: random.Random, dimension: int) -> tuple[int, int]:
    """Draw an unordered pair of distinct axes in ``[0, dimension)``.

    A collision on axis 0 redraws the second axis from ``[1, dimension - 1]``;
    any other collision moves the first axis down by one. Either way exactly
    two or three draws are made, never a rejection loop.
    """
    a = rng.randrange(dimension)
    b = rng.randrange(dimension)
    if a == b:
        if a == 0:
            b = rng.randint(1, dimension - 1)
        else:
            a -= 1
    return (min(a, b), max(a, b))


def _random_rotation(
    rng: random.Random, dimension: int, dtype: DTypeLike
) -> Affine:
    angle = rng.random() * math.pi
    a, b = distinct_axes(rng, dimension)
    return Affine.rotation(dimension, angle, a, b, dtype)


def random_affine(
    rng: random.Random,
    dimension: int,
    *,
    pre_rotate: bool = True,
    post_rotate: bool = False,
    dtype: DTypeLike = np.float64,
) -> Affine:
    """Draw one contracting affine map.

    The result is ``scale @ pre_rotation @ translation @ post_rotation``, so a
    vector is rotated (post), translated, rotated again (pre) and finally
    scaled. The scale is uniform in ``[0.2, 0.8)``, each translation component
    uniform in ``[-1, 1)``. Rotations need a plane, so in one dimension they
    are skipped without consuming any draws.
    """
    s = 0.2 + 0.6 * rng.random()

    can_rotate = dimension >= 2
    pre = Affine.identity(dimension, dtype)
    if pre_rotate and can_rotate:
        pre = _random_rotation(rng, dimension, dtype)

    offset = [rng.random() * 2 - 1 for _ in range(dimension)]

    post = Affine.identity(dimension, dtype)
    if post_rotate and can_rotate:
        post = _random_rotation(rng, dimension, dtype)

    return (
        Affine.scale(dimension, s, dtype)
        @ pre
        @ Affine.translation(offset, dtype)
        @ post
    )


def random_flame_weights(rng: random.Random, limit: int) -> tuple[float, ...]:
    """Draw variation weights with at most ``limit`` non-zero entries, summing to 1."""
    weights = [rng.randrange(10000) / 10000 for _ in FLAME_VARIATIONS]

    nonzero = [i for i, w in enumerate(weights) if w > 0]
    while len(nonzero) > limit:
        weights[nonzero.pop(rng.randrange(len(nonzero)))] = 0.0

    total = sum(weights)
    if total <= 0:
        return (1.0,) + (0.0,) * (len(FLAME_VARIATIONS) - 1)
    return tuple(w / total for w in weights)


# -------------------------
# Transform families
# -------------------------


def gasket_functions(p: Parameters) -> tuple[Affine, ...]:
    """Sierpinski gasket: halve, then move towards a corner of a simplex."""
    od, d, dtype = p.model_dimension, p.dimension, p.dtype
    count = (1 << (od - 1)) + 1

    half = Affine.scale(d, 0.5, dtype)
    out: list[Affine] = []
    for i in range(count):
        t = np.zeros(d)
        if i == 0:
            t[0] = 0.25
        else:
            t[0] = -0.25
            for j in range(1, od):
                t[j] = -0.25 if (i - 1) & (1 << (j - 1)) else 0.25
        out.append(Affine.translation(t, dtype) @ half)
    return tuple(out)


# 3x3 grid cells without the centre, in units of 1/3.
_CARPET_CELLS = (
    (-1, -1),
    (-1, 0),
    (-1, 1),
    (1, -1),
    (1, 0),
    (1, 1),
    (0, -1),
    (0, 1),
)
_SPONGE_MIDDLE_LAYER = ((1, 1), (-1, 1), (1, -1), (-1, -1))


def carpet_functions(p: Parameters) -> tuple[Affine, ...]:
    """Sierpinski carpet (2-D) or Menger sponge (3-D): third, then move to a cell."""
    d, dtype = p.dimension, p.dtype

    cells: list[tuple[int, ...]]
    if p.model_dimension == 2:
        cells = list(_CARPET_CELLS)
    else:
        cells = [(x, y, -1) for x, y in _CARPET_CELLS]
        cells += [(x, y, 1) for x, y in _CARPET_CELLS]
        cells += [(x, y, 0) for x, y in _SPONGE_MIDDLE_LAYER]

    third = Affine.scale(d, 1.0 / 3.0, dtype)
    out: list[Affine] = []
    for cell in cells:
        t = np.zeros(d)
        t[: len(cell)] = [c / 3.0 for c in cell]
        out.append(Affine.translation(t, dtype) @ third)
    return tuple(out)


def random_affine_functions(p: Parameters) -> tuple[Affine, ...]:
    rng = random.Random(p.seed)
    return tuple(
        random_affine(
            rng,
            p.dimension,
            pre_rotate=p.pre_rotate,
            post_rotate=p.post_rotate,
            dtype=p.dtype,
        )
        for _ in range(p.functions)
    )


def random_flame_functions(p: Parameters) -> tuple[FlameTransform, ...]:
    rng = random.Random(p.seed)
    out: list[FlameTransform] = []
    for _ in range(p.functions):
        affine = random_affine(
            rng,
            p.dimension,
            pre_rotate=p.pre_rotate,
            post_rotate=p.post_rotate,
            dtype=p.dtype,
        )
        weights = random_flame_weights(rng, p.flame_coefficients)
        out.append(FlameTransform(affine, weights))
    return tuple(out)


@dataclass(frozen=True)
class Family:
    id: str
    generate: Callable[[Parameters], tuple[Transform, ...]]
    # None: any model dimension
    model_dimensions: tuple[int, ...] | None = None
    min_render_dimension: int = 1
    randomized: bool = False


FAMILIES: dict[str, Family] = {
    f.id: f
    for f in (
        Family("sierpinski-gasket", gasket_functions),
        Family("sierpinski-carpet", carpet_functions, model_dimensions=(2, 3)),
        Family("random-affine", random_affine_functions, randomized=True),
        Family(
            "random-flame",
            random_flame_functions,
            min_render_dimension=2,
            randomized=True,
        ),
    )
}


# One function never multiplies the face count, so the face limit cannot
# bound the depth; each face still costs one map application per iteration.
MAX_SINGLE_FUNCTION_ITERATIONS = 10_000


def _check_parameters(p: Parameters, family: Family) -> None:
    _require(p.model_dimension >= 1, "model_dimension must be >= 1")
    _require(
        p.dimension >= p.model_dimension,
        "render_dimension must be >= model_dimension",
    )
    _require(
        p.dimension >= family.min_render_dimension,
        f"{family.id} needs render_dimension >= {family.min_render_dimension}",
    )
    if family.model_dimensions is not None:
        _require(
            p.model_dimension in family.model_dimensions,
            f"{family.id} supports model_dimension "
            f"{' or '.join(str(d) for d in family.model_dimensions)}, "
            f"got {p.model_dimension}",
        )
    _require(p.iterations >= 0, "iterations must be >= 0")
    if family.randomized:
        _require(p.functions >= 1, "functions must be >= 1")
        if family.id == "random-flame":
            _require(p.flame_coefficients >= 1, "flame_coefficients must be >= 1")
    _require(p.radius > 0, "radius must be > 0")
    _require(p.face_limit >= 1, "face_limit must be >= 1")

    # past this dimension 2**(d - 2) alone is larger than the limit
    base_fits = p.model_dimension - 2 < p.face_limit.bit_length()
    _require(
        base_fits and cube_face_count(p.model_dimension) <= p.face_limit,
        f"a {p.model_dimension}-cube has more faces than the face limit of "
        f"{p.face_limit}",
    )
    if family.randomized and p.functions == 1:
        _require(
            p.iterations <= MAX_SINGLE_FUNCTION_ITERATIONS,
            f"iterations must be <= {MAX_SINGLE_FUNCTION_ITERATIONS} "
            "with a single function",
        )

    try:
        dtype = np.dtype(p.scalar)
    except TypeError as e:
        raise ConfigError(f"unknown scalar type {p.scalar!r}") from e
    _require(
        np.issubdtype(dtype, np.floating),
        f"scalar must name a floating point type, got {p.scalar!r}",
    )


# -------------------------
# Base primitive
# -------------------------


class PrimitiveCursor:
    """Restartable forward cursor over a primitive's faces."""

    __slots__ = ("_faces", "position")

    def __init__(self, faces: Sequence[np.ndarray], position: int = 0) -> None:
        self._faces = faces
        self.position = position

    @property
    def at_end(self) -> bool:
        return self.position >= len(self._faces)

    def value(self) -> np.ndarray:
        return self._faces[self.position]

    def advance(self) -> None:
        self.position += 1

    def reset(self) -> None:
        self.position = 0

    def copy(self) -> PrimitiveCursor:
        return PrimitiveCursor(self._faces, self.position)

    __copy__ = copy

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PrimitiveCursor):
            return NotImplemented
        return self._faces is other._faces and self.position == other.position

    __hash__ = None  # type: ignore[assignment]


class Primitive(Protocol):
    face_vertices: int
    model_dimension: int
    render_dimension: int

    def size(self) -> int: ...

    def cursor(self) -> PrimitiveCursor: ...


def _cube_faces(
    model_dimension: int, render_dimension: int, half: float
) -> list[list[list[float]]]:
    # Extrude a point along one axis at a time: points sweep out lines, lines
    # sweep out square faces, faces are copied to both sides.
    points: list[list[float]] = [[0.0] * render_dimension]
    lines: list[list[list[float]]] = []
    faces: list[list[list[float]]] = []

    for i in range(model_dimension):
        new_points: list[list[float]] = []
        new_lines: list[list[list[float]]] = []
        new_faces: list[list[list[float]]] = []

        for line in lines:
            for v in line:
                v[i] = -half
            upper = [list(v) for v in line]
            for v in upper:
                v[i] = half
            new_lines.append(upper)
            new_faces.append(
                [list(upper[0]), list(upper[1]), list(line[1]), list(line[0])]
            )

        for face in faces:
            for v in face:
                v[i] = -half
            upper = [list(v) for v in face]
            for v in upper:
                v[i] = half
            new_faces.append(upper)

        for p in points:
            p[i] = -half
            q = list(p)
            q[i] = half
            new_points.append(q)
            lines.append([list(p), list(q)])

        points += new_points
        lines += new_lines
        faces += new_faces

    return faces


def cube_face_count(dimension: int) -> int:
    """Number of square 2-faces of a ``dimension``-cube, without building it."""
    if dimension < 2:
        return 0
    return math.comb(dimension, 2) << (dimension - 2)


class Cube:
    """Hypercube with edge length ``radius``, centred on the origin.

    Its faces are the square 2-faces, so a ``d``-cube has
    ``C(d, 2) * 2**(d - 2)`` of them and a 1-cube has none.
    """

    id = "cube"
    face_vertices = 4

    def __init__(
        self,
        model_dimension: int,
        render_dimension: int | None = None,
        *,
        radius: float = 1.0,
        dtype: DTypeLike = np.float64,
    ) -> None:
        self.model_dimension = model_dimension
        self.render_dimension = (
            model_dimension if render_dimension is None else render_dimension
        )
        faces: list[np.ndarray] = []
        for face in _cube_faces(model_dimension, self.render_dimension, radius * 0.5):
            arr = np.array(face, dtype=dtype)
            arr.setflags(write=False)
            faces.append(arr)
        self.faces: tuple[np.ndarray, ...] = tuple(faces)

    def size(self) -> int:
        return len(self.faces)

    def cursor(self) -> PrimitiveCursor:
        return PrimitiveCursor(self.faces)


# -------------------------
# Lazy face enumeration
# -------------------------


class FaceIterator:
    """Cursor over the faces of an IFS at a fixed iteration depth.

    The position is a flat counter ``n`` in ``[0, limit)`` plus a cursor into
    the base primitive. The base-``len(transforms)`` digits of ``n``, most
    significant first, select which transform is applied at each step: the
    first digit's transform is applied first. Transforms are applied one at
    a time, never premultiplied, so non-affine transforms work too.
    """

    def __init__(
        self,
        cursor: PrimitiveCursor,
        transforms: tuple[Transform, ...],
        iterations: int,
        limit: int,
        n: int = 0,
    ) -> None:
        self.cursor = cursor
        self.transforms = transforms
        self.iterations = iterations
        self.limit = limit
        self.n = n

    @property
    def done(self) -> bool:
        return self.n >= self.limit

    def digits(self) -> Iterator[int]:
        """Yield the digits of ``n``, most significant first, one at a time."""
        base = len(self.transforms)
        if base <= 1:
            yield from itertools.repeat(0, self.iterations)
            return
        n = self.n
        divisor = base ** (self.iterations - 1) if self.iterations else 0
        for _ in range(self.iterations):
            digit, n = divmod(n, divisor)
            yield digit
            divisor //= base

    def value(self) -> np.ndarray:
        face = self.cursor.value()
        for digit in self.digits():
            face = self.transforms[digit].apply(face)
        return face

    def advance(self) -> None:
        if self.done:
            return
        self.cursor.advance()
        if self.cursor.at_end:
            self.cursor.reset()
            self.n += 1

    def __iter__(self) -> FaceIterator:
        return self

    def __next__(self) -> np.ndarray:
        if self.done:
            raise StopIteration
        face = self.value()
        self.advance()
        return face

    def __copy__(self) -> FaceIterator:
        return FaceIterator(
            self.cursor.copy(), self.transforms, self.iterations, self.limit, self.n
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FaceIterator):
            return NotImplemented
        # every exhausted state is the same end
        if self.done and other.done:
            return True
        return self.n == other.n and self.cursor.position == other.cursor.position

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"FaceIterator(n={self.n}, face={self.cursor.position}, "
            f"limit={self.limit})"
        )


def effective_iterations(
    base_faces: int, functions: int, iterations: int, face_limit: int
) -> int:
    """Largest depth ``k <= iterations`` whose face count fits in ``face_limit``.

    The face count at depth ``k`` is ``base_faces * functions**k``.

    Depth 0 is always allowed.
    """
    if functions <= 1:
        return iterations if base_faces <= face_limit else 0
    depth, total = 0, base_faces
    while depth < iterations and total * functions <= face_limit:
        total *= functions
        depth += 1
    return depth


class IteratedFunctionSystem:
    """The faces of an IFS attractor, enumerated lazily.

    Holds the base primitive and an immutable tuple of transforms. Every
    iterator obtained from :meth:`begin` (or ``iter()``) owns its own
    primitive cursor, so any number of them can be in flight at once.
    """

    def __init__(
        self,
        primitive: Primitive,
        transforms: Iterable[Transform],
        iterations: int,
        *,
        face_limit: int = 1_000_000,
        family_id: str = "ifs",
    ) -> None:
        _require(iterations >= 0, "iterations must be >= 0")
        _require(face_limit >= 1, "face_limit must be >= 1")

        self.transforms: tuple[Transform, ...] = tuple(transforms)
        _require(
            len(self.transforms) > 0 or iterations == 0,
            "an IFS needs at least one function to iterate",
        )

        base = primitive.size()
        _require(base > 0, "base primitive has no faces")
        _require(
            base <= face_limit,
            f"base primitive has {base} faces, more than the face limit of "
            f"{face_limit}",
        )
        _require(
            len(self.transforms) != 1 or iterations <= MAX_SINGLE_FUNCTION_ITERATIONS,
            f"iterations must be <= {MAX_SINGLE_FUNCTION_ITERATIONS} "
            "with a single function",
        )

        self.primitive = primitive
        self.id = family_id
        self.model_dimension = primitive.model_dimension
        self.render_dimension = primitive.render_dimension

        self.requested_iterations = iterations
        self.iterations = effective_iterations(
            base, len(self.transforms), iterations, face_limit
        )
        if self.iterations < iterations:
            logger.warning(
                "%s: %d iterations would exceed the face limit of %d; using %d",
                family_id,
                iterations,
                face_limit,
                self.iterations,
            )
        self.limit = len(self.transforms) ** self.iterations

    @property
    def face_vertices(self) -> int:
        return self.primitive.face_vertices

    @property
    def projection_steps(self) -> int:
        """Projections needed to bring faces down to a 2-D drawing surface."""
        return max(self.render_dimension - 2, 0)

    def size(self) -> int:
        return self.primitive.size() * self.limit

    def __len__(self) -> int:
        return self.size()

    def begin(self) -> FaceIterator:
        return FaceIterator(
            self.primitive.cursor(), self.transforms, self.iterations, self.limit
        )

    def end(self) -> FaceIterator:
        return FaceIterator(
            self.primitive.cursor(),
            self.transforms,
            self.iterations,
            self.limit,
            self.limit,
        )

    def __iter__(self) -> Iterator[np.ndarray]:
        return self.begin()

    def _iterator_at(self, index: int) -> FaceIterator:
        n, k = divmod(index, self.primitive.size())
        cursor = self.primitive.cursor()
        cursor.position = k
        return FaceIterator(cursor, self.transforms, self.iterations, self.limit, n)

    def face_at(self, index: int) -> np.ndarray:
        size = self.size()
        if index < 0:
            index += size
        if not 0 <= index < size:
            raise IndexError(f"face index {index} out of range for {size} faces")
        return self._iterator_at(index).value()

    def iter_range(self, start: int, stop: int | None = None) -> Iterator[np.ndarray]:
        """Iterate over the faces with flat index in ``[start, stop)``."""
        if start < 0:
            raise ValueError("start must be >= 0")
        size = self.size()
        stop = size if stop is None else min(stop, size)
        if start >= stop:
            return iter(())
        return itertools.islice(self._iterator_at(start), stop - start)

    def partition(self, parts: int) -> list[range]:
        """Split the face indices into ``parts`` contiguous, near-equal ranges."""
        if parts < 1:
            raise ValueError("parts must be >= 1")
        size = self.size()
        bounds = [size * i // parts for i in range(parts + 1)]
        return [range(bounds[i], bounds[i + 1]) for i in range(parts)]


def build_ifs(
    family: str, parameters: Parameters | None = None
) -> IteratedFunctionSystem:
    """Validate ``parameters`` and build the IFS for the named family."""
    p = parameters if parameters is not None else Parameters()
    fam = FAMILIES.get(family)
    _require(
        fam is not None,
        f"unknown family {family!r}; expected one of {', '.join(sorted(FAMILIES))}",
    )
    fam = cast(Family, fam)
    _check_parameters(p, fam)

    primitive = Cube(p.model_dimension, p.dimension, radius=p.radius, dtype=p.dtype)
    _require(
        primitive.size() > 0,
        f"a {p.model_dimension}-cube has no faces; model_dimension must be >= 2",
    )

    transforms = fam.generate(p)
    logger.debug(
        "%s: generated %d functions (model=%d, render=%d, seed=%d)",
        fam.id,
        len(transforms),
        p.model_dimension,
        p.dimension,
        p.seed,
    )
    return IteratedFunctionSystem(
        primitive,
        transforms,
        p.iterations,
        face_limit=p.face_limit,
        family_id=fam.id,
    )


# -------------------------
# SVG writing
# -------------------------


@dataclass(frozen=True)
class SvgStyle:
    fill: str = "#000"
    fill_opacity: float = 1.0
    stroke: str = "none"
    stroke_width: float = 0.0
    stroke_linejoin: str = "round"


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def project_faces(
    faces: Iterable[np.ndarray], scale: float = 1.0
) -> Generator[list[Point], None, None]:
    """Orthographic projection onto the first two axes."""
    for face in faces:
        yield [(float(v[0]) * scale, float(v[1]) * scale) for v in face]


def compute_bounds(
    polygons: Iterable[list[Point]],
) -> tuple[float, float, float, float]:
    min_x = min_y = math.inf
    max_x = max_y = -math.inf
    seen = False
    for pl in polygons:
        for x, y in pl:
            seen = True
            if x < min_x:
                min_x = x
            if x > max_x:
                max_x = x
            if y < min_y:
                min_y = y
            if y > max_y:
                max_y = y
    _require(seen, "No drawable geometry produced.")
    return (min_x, min_y, max_x, max_y)


def _fmt(x: float, precision: int) -> str:
    # Normalise -0.0 so it never produces "-0" in SVG output.
    if not x:
        x = 0.0
    # Strip trailing zeros for nicer SVG.
    s = f"{x:.{precision}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    if s == "-0":
        s = "0"
    return s or "0"


def write_svg(
    faces: Iterable[np.ndarray],
    *,
    out_path: str,
    scale: float,
    margin: float,
    precision: int,
    flip_y: bool,
    width: float | None,
    height: float | None,
    style: SvgStyle,
    background: str | None,
    title: str | None = None,
) -> int:
    """Write ``faces`` as SVG polygons and return how many were written.

    ``faces`` is iterated twice (bounds first, then output), so it must be
    restartable, e.g. an :class:`IteratedFunctionSystem` or a list.
    """
    _require(
        iter(faces) is not faces,
        "faces must be restartable (a list or an IFS), not a one-shot iterator",
    )
    minx, miny, maxx, maxy = compute_bounds(project_faces(faces, scale))

    minx -= margin
    miny -= margin
    maxx += margin
    maxy += margin
    w = maxx - minx
    h = maxy - miny
    _require(
        w > 0 and h > 0,
        "Degenerate bounds after margin (width or height is zero). "
        "Set svg.margin > 0 to render flat geometry.",
    )

    svg_w_attr = f' width="{_fmt(float(width), precision)}"' if width else ""
    svg_h_attr = f' height="{_fmt(float(height), precision)}"' if height else ""

    view_box = (
        f"{_fmt(minx, precision)} {_fmt(miny, precision)} {_fmt(w, precision)} "
        f"{_fmt(h, precision)}"
    )

    style_attr = (
        f'fill="{style.fill}" fill-opacity="{_fmt(style.fill_opacity, 3)}" '
        f'stroke="{style.stroke}" '
        f'stroke-width="{_fmt(style.stroke_width, precision)}" '
        f'stroke-linejoin="{style.stroke_linejoin}"'
    )

    _ensure_parent_dir(out_path)
    count = 0
    with open(out_path, "w", encoding="utf-8") as f:
        f.write('<?xml version="1.0" encoding="UTF-8"?>\n')
        f.write(
            "<svg xmlns=\"http://www.w3.org/2000/svg\" version=\"1.1\" "
            f"viewBox=\"{view_box}\"{svg_w_attr}{svg_h_attr}>\n"
        )

        if title:
            safe_title = (
                title.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
            )
            f.write(f"  <title>{safe_title}</title>\n")

        if background and background.lower() != "none":
            f.write(
                f'  <rect x="{_fmt(minx, precision)}" y="{_fmt(miny, precision)}" '
                f'width="{_fmt(w, precision)}" height="{_fmt(h, precision)}" '
                f'fill="{background}" />\n'
            )

        if flip_y:
            # translate(0, miny+maxy) scale(1,-1) flips about the centre line
            flip_y_line = _fmt(miny + maxy, precision)
            f.write(f'  <g transform="translate(0,{flip_y_line}) scale(1,-1)">\n')
            indent = "    "
        else:
            indent = "  "

        for pl in project_faces(faces, scale):
            pts = " ".join(f"{_fmt(x, precision)},{_fmt(y, precision)}" for x, y in pl)
            f.write(f'{indent}<polygon points="{pts}" {style_attr} />\n')
            count += 1

        if flip_y:
            f.write("  </g>\n")

        f.write("</svg>\n")

    return count


# -------------------------
# Config parsing
# -------------------------


@dataclass(frozen=True)
class RenderConfig:
    name: str
    family: str
    parameters: Parameters

    # svg
    scale: float
    margin: float
    precision: int
    flip_y: bool
    width: float | None
    height: float | None
    style: SvgStyle
    background: str | None


def parse_config(obj: dict[str, Any]) -> RenderConfig:
    obj = _as_dict(obj, "root")

    name = _as_str(obj.get("name", "IFS"), "name")
    family = _as_str(obj.get("family", "sierpinski-gasket"), "family")
    _require(
        family in FAMILIES,
        f"family must be one of {', '.join(sorted(FAMILIES))}; got {family!r}",
    )

    iterations = _as_int(obj.get("iterations", 0), "iterations")
    _require(iterations >= 0, "iterations must be >= 0")

    space = _as_dict(obj.get("space", {}), "space")
    model_dimension = _as_int(
        space.get("model_dimension", 2), "space.model_dimension"
    )
    render_dimension = space.get("render_dimension")
    if render_dimension is not None:
        render_dimension = _as_int(render_dimension, "space.render_dimension")
    radius = _as_float(space.get("radius", 1.0), "space.radius")
    face_limit = _as_int(space.get("face_limit", 1_000_000), "space.face_limit")
    scalar = _as_str(space.get("scalar", "float64"), "space.scalar")

    rnd = _as_dict(obj.get("random", {}), "random")
    params = Parameters(
        model_dimension=model_dimension,
        render_dimension=render_dimension,
        iterations=iterations,
        functions=_as_int(rnd.get("functions", 3), "random.functions"),
        seed=_as_int(rnd.get("seed", 0), "random.seed"),
        pre_rotate=_as_bool(rnd.get("pre_rotate", True), "random.pre_rotate"),
        post_rotate=_as_bool(rnd.get("post_rotate", False), "random.post_rotate"),
        flame_coefficients=_as_int(
            rnd.get("flame_coefficients", 3), "random.flame_coefficients"
        ),
        radius=radius,
        face_limit=face_limit,
        scalar=scalar,
    )
    _check_parameters(params, FAMILIES[family])

    svg = _as_dict(obj.get("svg", {}), "svg")
    scale = _as_float(svg.get("scale", 100), "svg.scale")
    _require(scale > 0, "svg.scale must be > 0")
    margin = _as_float(svg.get("margin", 10), "svg.margin")
    precision = _as_int(svg.get("precision", 3), "svg.precision")
    _require(0 <= precision <= 10, "svg.precision must be between 0 and 10")
    flip_y = _as_bool(svg.get("flip_y", True), "svg.flip_y")

    width = svg.get("width")
    height = svg.get("height")
    if width is not None:
        width = _as_float(width, "svg.width")
        _require(width > 0, "svg.width must be > 0")
    if height is not None:
        height = _as_float(height, "svg.height")
        _require(height > 0, "svg.height must be > 0")

    style_obj = _as_dict(svg.get("style", {}), "svg.style")
    style = SvgStyle(
        fill=_as_str(style_obj.get("fill", "#000"), "svg.style.fill"),
        fill_opacity=_as_float(
            style_obj.get("fill_opacity", 1.0), "svg.style.fill_opacity"
        ),
        stroke=_as_str(style_obj.get("stroke", "none"), "svg.style.stroke"),
        stroke_width=_as_float(
            style_obj.get("stroke_width", 0.0), "svg.style.stroke_width"
        ),
        stroke_linejoin=_as_str(
            style_obj.get("stroke_linejoin", "round"), "svg.style.stroke_linejoin"
        ),
    )
    _require(
        0.0 <= style.fill_opacity <= 1.0,
        "svg.style.fill_opacity must be between 0 and 1",
    )

    background = svg.get("background")
    if background is not None:
        background = _as_str(background, "svg.background")

    return RenderConfig(
        name=name,
        family=family,
        parameters=params,
        scale=scale,
        margin=margin,
        precision=precision,
        flip_y=flip_y,
        width=width,
        height=height,
        style=style,
        background=background,
    )


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e


# -------------------------
# Random config generator
# -------------------------


def generate_random_config(seed: int | None = None) -> dict[str, Any]:
    rng = random.Random(seed)

    family = rng.choice(["random-affine", "random-flame"])
    model_dimension = rng.choice([2, 2, 3])
    functions = rng.randint(2, 5)
    # keep renders small enough to open in an editor
    iterations = rng.randint(3, 6)

    cfg = {
        "name": f"Random {family}",
        "family": family,
        "iterations": iterations,
        "space": {
            "model_dimension": model_dimension,
            "render_dimension": model_dimension,
            "radius": 1.0,
            "face_limit": 200_000,
            "scalar": "float64",
        },
        "random": {
            "seed": rng.randrange(2**31),
            "functions": functions,
            "pre_rotate": rng.random() < 0.75,
            "post_rotate": rng.random() < 0.35,
            "flame_coefficients": rng.randint(1, 4),
        },
        "svg": {
            "scale": 100,
            "margin": 10,
            "precision": 3,
            "flip_y": True,
            "style": {
                "fill": "#000",
                "fill_opacity": 0.6,
                "stroke": "none",
                "stroke_width": 0,
                "stroke_linejoin": "round",
            },
        },
    }

    # Internal sanity check: generated config must always parse cleanly.
    parse_config(cfg)
    return cfg


def dump_json(obj: dict[str, Any], path: str) -> None:
    _ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)
        f.write("\n")


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
INPUT JSON SYNTAX (render)

The renderer consumes a single JSON file describing:
  - a transform family and iteration depth
  - the space the base hypercube lives in
  - seeding for the random families
  - SVG output options (style, scale, margin, viewBox behavior)

Top-level keys

  name: string (optional)
      A human-readable title; written into the SVG <title>.

  family: string (default "sierpinski-gasket")
      One of:
        sierpinski-gasket   2**(model_dimension-1)+1 maps, scale 1/2
        sierpinski-carpet   8 (2-D) or 20 (3-D, Menger sponge) maps, scale 1/3
        random-affine       random.functions random contractions
        random-flame        random contractions blended with flame variations

  iterations: integer >= 0 (default 0)
      Iteration depth. The output has
          base_faces * functions ** iterations
      faces, where base_faces is the number of square faces of the hypercube.

  space: object (optional)

    space.model_dimension: integer >= 2 (default 2)
        Dimension of the base hypercube.

    space.render_dimension: integer (default model_dimension)
        Dimension of the vectors; must be >= model_dimension.

    space.radius: number (default 1)
        Edge length of the base hypercube.

    space.face_limit: integer (default 1000000)
        Maximum number of output faces. If the requested iteration depth
        would exceed it, the largest depth that fits is used instead. A base
        hypercube that alone has more faces than this is rejected.

    space.scalar: string (default "float64")
        numpy floating point type used for coordinates ("float32", ...).

  random: object (optional, random families only)

    random.seed: integer (default 0)
    random.functions: integer >= 1 (default 3)
    random.pre_rotate: boolean (default true)
    random.post_rotate: boolean (default false)
    random.flame_coefficients: integer >= 1 (default 3)
        Maximum number of non-zero flame variation weights.

SVG options

  svg: object (optional)

    svg.scale: number (default 100)
        Model units to SVG user units.

    svg.margin: number (default 10)
        Extra margin added to the computed bounds (in SVG user units).

    svg.precision: integer 0..10 (default 3)
        Coordinate formatting precision.

    svg.flip_y: boolean (default true)
        If true, wraps the drawing in a group transform that flips the Y-axis.

    svg.width / svg.height: number (optional)
        If set, specifies explicit SVG width/height attributes (viewBox is still used).

    svg.background: string color (optional)
        Adds a background rect. Example: "white" or "#fff".

    svg.style: object (optional)
        style.fill: string (default "#000")
        style.fill_opacity: number 0..1 (default 1)
        style.stroke: string (default "none")
        style.stroke_width: number (default 0)
        style.stroke_linejoin: string (default "round")

Faces of models with more than two dimensions are projected orthographically
onto the first two axes.

Examples

  Minimal (Sierpinski gasket):

    {
      "family": "sierpinski-gasket",
      "iterations": 6
    }

  Menger sponge:

    {
      "family": "sierpinski-carpet",
      "iterations": 2,
      "space": {"model_dimension": 3}
    }

RANDOM INPUT GENERATION (random)

  python ifs_generator.py random out.json --seed 123

Produces a small JSON config for one of the random families, intended for
experimentation.
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="ifs_generator.py",
        description="Lazy Iterated Function System renderer that outputs SVG.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )
    p.add_argument("--log-file", default=None, help="Also write log records here.")

    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser(
        "render",
        help="Render an IFS JSON config to an SVG file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pr.add_argument("config", help="Path to the input JSON config.")
    pr.add_argument("output", help="Path to write the SVG output.")

    pv = sub.add_parser(
        "validate",
        help="Validate a JSON config and print a brief summary.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pv.add_argument("config", help="Path to the input JSON config.")

    pg = sub.add_parser(
        "random",
        help="Generate a random JSON config for experimentation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    pg.add_argument("output", help="Where to write the generated JSON file.")
    pg.add_argument(
        "--seed", type=int, default=None, help="Seed for repeatable randomness."
    )

    return p


# -------------------------
# Commands
# -------------------------


def cmd_render(config_path: str, output_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    model = build_ifs(cfg.family, cfg.parameters)

    count = write_svg(
        model,
        out_path=output_path,
        scale=cfg.scale,
        margin=cfg.margin,
        precision=cfg.precision,
        flip_y=cfg.flip_y,
        width=cfg.width,
        height=cfg.height,
        style=cfg.style,
        background=cfg.background,
        title=cfg.name,
    )
    logger.info("wrote %d faces to %s", count, output_path)


_VALIDATE_FACE_LIMIT = 10_000


def cmd_validate(config_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    p = cfg.parameters
    model = build_ifs(cfg.family, p)

    print(f"name: {cfg.name}")
    print(f"family: {model.id}")
    print(
        f"dimensions: model={model.model_dimension} render={model.render_dimension} "
        f"projections={model.projection_steps}"
    )
    print(f"functions: {len(model.transforms)}")
    if model.iterations < p.iterations:
        print(f"iterations: {model.iterations} (requested {p.iterations})")
    else:
        print(f"iterations: {model.iterations}")
    print(f"faces: {model.size()}")
    print(f"svg: scale={cfg.scale} margin={cfg.margin} precision={cfg.precision}")

    # Bounded enumeration to catch render-time failures (non-finite coordinates
    # from flame variations, degenerate geometry).
    sample = list(model.iter_range(0, _VALIDATE_FACE_LIMIT))
    truncated = len(sample) < model.size()
    label = f"{len(sample)}+" if truncated else str(len(sample))
    print(f"faces (sampled): {label}")
    if not all(np.all(np.isfinite(face)) for face in sample):
        raise ConfigError("Config produces non-finite coordinates")


def cmd_random(output_path: str, seed: int | None) -> None:
    cfg = generate_random_config(seed)
    dump_json(cfg, output_path)


def main(argv: list[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.WARNING, args.log_file)

    try:
        if args.cmd == "render":
            cmd_render(args.config, args.output)
        elif args.cmd == "validate":
            cmd_validate(args.config)
        elif args.cmd == "random":
            cmd_random(args.output, args.seed)
        else:
            raise AssertionError("unreachable")
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
