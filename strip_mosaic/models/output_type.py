"""
Output sample types and float-to-sample conversion
"""

import math
from enum import Enum
from typing import Optional

import numpy as np


class OutputType(Enum):
    """Sample types the mosaic can be written in"""
    FLOAT32 = 'Float32'
    BYTE = 'Byte'
    UINT16 = 'UInt16'
    INT16 = 'Int16'
    UINT32 = 'UInt32'
    INT32 = 'Int32'

    @classmethod
    def parse(cls, name: str) -> 'OutputType':
        """Look up a type by its name, case-insensitively"""
        for member in cls:
            if member.value.lower() == str(name).lower():
                return member
        supported = ', '.join(m.value for m in cls)
        raise ValueError(f"Unsupported output type: {name}. Supported types: {supported}")

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(_DTYPES[self])

    @property
    def is_integer(self) -> bool:
        return self is not OutputType.FLOAT32

    def default_nodata(self) -> float:
        """Nodata used when neither the user nor the inputs provide one"""
        return float('nan') if self is OutputType.FLOAT32 else 0.0

    def convert(self, tile: np.ndarray, nodata: Optional[float] = None) -> np.ndarray:
        """
        Convert a float tile to this sample type.

        Integer types are rounded then clamped to the type's range. NaN
        samples become the converted nodata value.
        """
        if not self.is_integer:
            return np.asarray(tile, dtype=np.float32)

        info = np.iinfo(self.dtype)
        values = round_half_away(np.asarray(tile, dtype=np.float64))
        missing = np.isnan(values)
        values = np.clip(values, info.min, info.max)
        if np.any(missing):
            values[missing] = self.convert_value(nodata) if nodata is not None else 0
        return values.astype(self.dtype)

    def convert_value(self, value: float):
        """Round and clamp a single value, e.g. the nodata value"""
        if not self.is_integer:
            return float(np.float32(value))
        if value is None or math.isnan(value):
            return 0
        info = np.iinfo(self.dtype)
        return int(round_half_away(min(max(value, info.min), info.max)))


def round_half_away(values):
    """Round to nearest, halves away from zero (2.5 -> 3, -2.5 -> -3)"""
    return np.sign(values) * np.floor(np.abs(values) + 0.5)


_DTYPES = {
    OutputType.FLOAT32: np.float32,
    OutputType.BYTE: np.uint8,
    OutputType.UINT16: np.uint16,
    OutputType.INT16: np.int16,
    OutputType.UINT32: np.uint32,
    OutputType.INT32: np.int32,
}
