# controller/config.py
from dataclasses import dataclass, field

from .pid import ControlGains, ProportionalIntegral

# — Cycle —
PERIOD_S        = 0.010   # 100 Hz; same value for the exchange and the ticker
DEADBAND        = 0.01    # half-width, in control-signal units

# — Controller defaults —
DEFAULT_KP       = 4.0
DEFAULT_KI       = 0.01
DEFAULT_SETPOINT = 0.5    # normalized stroke

# — Devices on the bus (names as reported by the I/O bridge) —
SENSOR_DEVICE   = "EL3004"   # analog input terminal with the position transducer
ACTUATOR_DEVICE = "EL2042"   # 2-channel digital output driving the extend/retract valves
SENSOR_OFFSET   = 2          # channel 1 value word follows the 2-byte status word

# — Serial I/O bridge —
DEFAULT_BAUD     = 115200
SERIAL_TIMEOUT_S = 0.05      # per request; also bounds the cyclic exchange

# — Cycle trace —
TRACE_ROTATE_MB   = 100.0
TRACE_FLUSH_EVERY = 200


@dataclass
class LoopConfig:
    """Runtime knobs for one run of the control loop."""

    period_s: float = PERIOD_S
    deadband: float = DEADBAND
    gains: ControlGains = field(default_factory=lambda: ProportionalIntegral(DEFAULT_KP, DEFAULT_KI))
    setpoint: float = DEFAULT_SETPOINT
    sensor_device: str = SENSOR_DEVICE
    actuator_device: str = ACTUATOR_DEVICE
    sensor_offset: int = SENSOR_OFFSET
