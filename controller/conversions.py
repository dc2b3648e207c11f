"""
Conversions between raw process-data words and controller units.

- Position transducer (input): unsigned 16-bit word, 0..65535 -> 0.0..1.0 of stroke,
  little-endian inside the sensor terminal's input image.
- Valve terminal (output): 2-bit pattern in the first output byte
  (see controller/actuation.py).
"""

import struct
from typing import Optional, Union

from .actuation import ActuationCommand

Number = Union[int, float]
Buffer = Union[bytes, bytearray, memoryview]

# -------------------- Hardware constants --------------------
ADC_BITS_MAX: int = (1 << 16) - 1   # 65535

_U16 = struct.Struct("<H")


# -------------------- Utils --------------------
def _clamp(x: Number, lo: Number, hi: Number) -> Number:
    return lo if x < lo else hi if x > hi else x


# -------------------- Input side --------------------
def adc_bits_to_normalized(bits: int) -> float:
    """Raw 16-bit word -> normalized position (0..1)."""
    b = int(_clamp(int(bits), 0, ADC_BITS_MAX))
    return b / ADC_BITS_MAX


def normalized_to_adc_bits(position: float) -> int:
    """Normalized position (0..1) -> raw 16-bit word. Used by the simulator."""
    p = float(_clamp(position, 0.0, 1.0))
    return int(round(p * ADC_BITS_MAX))


def decode_sample(inputs: Optional[Buffer], offset: int) -> Optional[float]:
    """
    Pull the position word out of a sensor input image.
    Returns None when the device is missing or the image is too short.
    """
    if inputs is None or offset < 0 or len(inputs) < offset + _U16.size:
        return None
    (bits,) = _U16.unpack_from(inputs, offset)
    return adc_bits_to_normalized(bits)


def encode_sample(outputs: bytearray, offset: int, position: float) -> None:
    """Inverse of decode_sample (simulated sensor terminals)."""
    _U16.pack_into(outputs, offset, normalized_to_adc_bits(position))


# -------------------- Output side --------------------
def write_command(outputs: Optional[bytearray], command: ActuationCommand) -> bool:
    """Write the valve pattern into output byte 0. Returns False if there is nowhere to write."""
    if outputs is None or len(outputs) < 1:
        return False
    outputs[0] = int(command)
    return True


def read_command(outputs: Optional[Buffer]) -> ActuationCommand:
    """Decode the valve pattern from output byte 0 (unknown patterns read as NEUTRAL)."""
    if not outputs:
        return ActuationCommand.NEUTRAL
    try:
        return ActuationCommand(outputs[0] & 0b11)
    except ValueError:
        return ActuationCommand.NEUTRAL
