# controller/actuation.py
from enum import IntEnum


class ActuationCommand(IntEnum):
    """2-bit valve pattern written to the first output byte of the valve terminal."""
    NEUTRAL = 0b00
    RETRACT = 0b01
    EXTEND  = 0b10


def actuate(control_signal: float, deadband_half_width: float) -> ActuationCommand:
    """
    Deadband mapping, no memory between cycles:
      u >  db  -> EXTEND
      u < -db  -> RETRACT
      else     -> NEUTRAL (boundary included)
    """
    if control_signal > deadband_half_width:
        return ActuationCommand.EXTEND
    if control_signal < -deadband_half_width:
        return ActuationCommand.RETRACT
    return ActuationCommand.NEUTRAL
