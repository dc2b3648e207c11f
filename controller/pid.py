# controller/pid.py
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Proportional:
    k_p: float


@dataclass(frozen=True)
class ProportionalIntegral:
    k_p: float
    k_i: float


ControlGains = Union[Proportional, ProportionalIntegral]


class CylinderPositionController:
    """
    PI servo for a pneumatic muscle cylinder.
    e = setpoint - measurement   [normalized stroke, 0..1]
    u = Kp*e + Ki*sum(e)         sign = direction, magnitude = effort

    The error sum is kept since the last setpoint change. No output clamp and
    no anti-windup: saturation is up to the caller (see controller/actuation.py).
    """
    def __init__(self, gains: ControlGains, setpoint: float):
        if isinstance(gains, ProportionalIntegral):
            self._kp, self._ki = float(gains.k_p), float(gains.k_i)
        elif isinstance(gains, Proportional):
            self._kp, self._ki = float(gains.k_p), 0.0
        else:
            raise TypeError(f"Unsupported gains: {gains!r}")
        self._setpoint = float(setpoint)
        self._acc = 0.0

    @property
    def k_p(self) -> float:
        return self._kp

    @property
    def k_i(self) -> float:
        return self._ki

    @property
    def setpoint(self) -> float:
        return self._setpoint

    @property
    def error_accumulator(self) -> float:
        return self._acc

    def new_setpoint(self, setpoint: float) -> "CylinderPositionController":
        """Aim at a new target (clamped to [0, 1]) and forget the integral."""
        sp = float(setpoint)
        self._setpoint = 0.0 if sp < 0.0 else 1.0 if sp > 1.0 else sp
        self._acc = 0.0
        return self

    def control_signal(self, measurement: float) -> float:
        """
        Return u = Kp*e + Ki*acc after adding e to acc.
        Measurement is expected in [0, 1] but not checked.
        """
        e = self._setpoint - measurement
        self._acc += e
        return self._kp * e + self._ki * self._acc

    def __repr__(self) -> str:
        return (f"CylinderPositionController(k_p={self._kp}, k_i={self._ki}, "
                f"setpoint={self._setpoint}, error_accumulator={self._acc})")
