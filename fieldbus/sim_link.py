# fieldbus/sim_link.py
"""
In-memory bus with a crude pneumatic-muscle plant behind it.

Useful for dry runs (`main.py sim`) and for driving the control loop in tests.
Faults can be injected: refused lifecycle states, an exchange that starts
failing after N cycles, and a sensor terminal that drops off the bus.
"""
from __future__ import annotations

from typing import Iterable, Optional

import numpy as np

from controller.actuation import ActuationCommand
from controller.config import ACTUATOR_DEVICE, PERIOD_S, SENSOR_DEVICE, SENSOR_OFFSET
from controller.conversions import encode_sample, read_command

from .link import DeviceIO, ExchangeError, FieldbusLink, LinkError, LinkState

SENSOR_IN_LEN    = 16   # 4 channels x (status word + value word)
ACTUATOR_OUT_LEN = 1


class CylinderPlant:
    """
    Position integrates the valve state: +speed while extending, -speed while
    retracting, holds in neutral. Clamped to the stroke [0, 1].
    """
    def __init__(self, position: float = 0.0, speed: float = 0.5,
                 noise_std: float = 0.0, seed: Optional[int] = None):
        self.position = float(position)
        self.speed = float(speed)          # stroke per second
        self.noise_std = float(noise_std)
        self._rng = np.random.default_rng(seed)

    def step(self, command: ActuationCommand, dt: float) -> float:
        if command == ActuationCommand.EXTEND:
            self.position += self.speed * dt
        elif command == ActuationCommand.RETRACT:
            self.position -= self.speed * dt
        self.position = float(np.clip(self.position, 0.0, 1.0))
        return self.measure()

    def measure(self) -> float:
        if self.noise_std <= 0.0:
            return self.position
        return float(np.clip(self.position + self._rng.normal(0.0, self.noise_std), 0.0, 1.0))


class SimulatedLink(FieldbusLink):
    def __init__(self, plant: Optional[CylinderPlant] = None,
                 sensor_device: str = SENSOR_DEVICE, actuator_device: str = ACTUATOR_DEVICE,
                 sensor_offset: int = SENSOR_OFFSET, period_s: float = PERIOD_S,
                 fail_states: Iterable[LinkState] = (),
                 fail_exchange_after: Optional[int] = None):
        self._sensor = DeviceIO.sized(sensor_device, SENSOR_IN_LEN, 0)
        self._actuator = DeviceIO.sized(actuator_device, 0, ACTUATOR_OUT_LEN)
        super().__init__([self._sensor, self._actuator])
        self.plant = plant or CylinderPlant()
        self.sensor_offset = sensor_offset
        self.period_s = float(period_s)
        self.fail_states = set(fail_states)
        self.fail_exchange_after = fail_exchange_after
        self.exchanges = 0
        self.visited = []   # every state successfully entered, in order
        self.last_command = ActuationCommand.NEUTRAL
        encode_sample(self._sensor.inputs, self.sensor_offset, self.plant.measure())

    @property
    def drop_sensor(self) -> bool:
        return self._sensor.name not in self._devices

    @drop_sensor.setter
    def drop_sensor(self, dropped: bool) -> None:
        if dropped:
            self._devices.pop(self._sensor.name, None)
        else:
            self._devices[self._sensor.name] = self._sensor

    def _enter_state(self, target: LinkState) -> None:
        if target in self.fail_states:
            raise LinkError(f"simulated refusal of {target.label}")
        self.visited.append(target)

    def _exchange(self) -> None:
        if self.fail_exchange_after is not None and self.exchanges >= self.fail_exchange_after:
            raise ExchangeError(f"simulated exchange failure after {self.exchanges} cycles")
        self.exchanges += 1
        # outputs only drive the valves in OP; SAFE_OP keeps them neutral
        command = read_command(self._actuator.outputs) if self.state == LinkState.OP else ActuationCommand.NEUTRAL
        self.last_command = command
        position = self.plant.step(command, self.period_s)
        encode_sample(self._sensor.inputs, self.sensor_offset, position)
