"""Array aliases shared by the alignment modules.

Point sets are ``(n, 2)`` float arrays of ``(x, y)`` coordinates, and
transform matrices are ``3x3`` homogeneous float arrays acting on column
vectors ``(x, y, 1)``.
"""
from typing import Any, Union

import numpy as np
import numpy.typing as npt

NumArray = npt.NDArray[Any]
FloatArray = npt.NDArray[np.float64]
IntArray = npt.NDArray[np.intp]
BoolArray = npt.NDArray[np.bool_]

PointArray = FloatArray
"""``(n, 2)`` coordinates, one ``(x, y)`` row per point."""

Matrix = FloatArray
"""``3x3`` homogeneous transform matrix."""

Float = Union[float, np.float64]
