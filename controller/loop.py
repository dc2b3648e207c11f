# controller/loop.py
"""
Fixed-period control loop.

Per cycle: exchange process data, pick up a new setpoint if the operator sent
one, read the position, run the PI law, map the result through the deadband
and write the valve pattern. A cycle without a usable position sample commands
neutral and leaves the controller alone.

On shutdown the valves are set neutral and the link is walked back
OP -> SAFE-OP -> PRE-OP -> INIT, best effort.
"""
import logging
import math
import time
from typing import Callable, List, Optional

from fieldbus.link import FieldbusLink, LinkError, LinkState

from .actuation import ActuationCommand, actuate
from .config import LoopConfig
from .conversions import decode_sample, write_command
from .pid import CylinderPositionController
from .setpoint import SetpointChannel
from .shutdown import ShutdownFlag

log = logging.getLogger(__name__)

DRAIN_SEQUENCE = (LinkState.SAFE_OP, LinkState.PRE_OP, LinkState.INIT)


class StartupError(RuntimeError):
    """The loop cannot start; nothing has been commanded yet."""


class Ticker:
    """
    Sleeps to the next multiple of `period_s` after reset().
    A late tick fires immediately and the schedule jumps to the next boundary
    still in the future, so overruns never produce a burst of catch-up ticks.
    """
    def __init__(self, period_s: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        if period_s <= 0:
            raise ValueError("period must be positive")
        self.period_s = float(period_s)
        self.clock = clock
        self._sleep = sleep
        self._next: Optional[float] = None
        self.missed = 0

    def reset(self) -> None:
        self._next = self.clock() + self.period_s

    def tick(self) -> int:
        """Wait for the next boundary. Returns how many boundaries were skipped."""
        if self._next is None:
            self.reset()
        now = self.clock()
        if now < self._next:
            self._sleep(self._next - now)
            self._next += self.period_s
            return 0
        skipped = int(math.floor((now - self._next) / self.period_s))
        self._next += (skipped + 1) * self.period_s
        self.missed += skipped
        if skipped:
            log.debug("overrun: skipped %d tick(s)", skipped)
        return skipped


class ControlLoop:
    def __init__(self, link: FieldbusLink, controller: CylinderPositionController,
                 channel: SetpointChannel, shutdown: ShutdownFlag,
                 config: Optional[LoopConfig] = None, ticker: Optional[Ticker] = None,
                 frame_bus=None):
        self.link = link
        self.controller = controller
        self.channel = channel
        self.shutdown = shutdown
        self.config = config or LoopConfig()
        self.ticker = ticker or Ticker(self.config.period_s)
        self.frame_bus = frame_bus
        self.cycles = 0
        self.last_command = ActuationCommand.NEUTRAL
        self._sample_missing = False
        self._skipped = 0
        self._t0 = None

    # ---------- lifecycle ----------

    def startup(self) -> None:
        cfg = self.config
        try:
            self.link.reach_operational()
        except LinkError as e:
            raise StartupError(f"link did not reach OP (stuck in {self.link.state.label}): {e}") from e
        if self.link.device(cfg.actuator_device) is None:
            raise StartupError(f"actuator device {cfg.actuator_device!r} not on the bus")
        if self.link.device(cfg.sensor_device) is None:
            log.warning("sensor device %r not on the bus; valves stay neutral until it shows up",
                        cfg.sensor_device)
        log.info("link OP, setpoint %.4f, period %.1f ms, deadband %g",
                 self.controller.setpoint, cfg.period_s * 1000.0, cfg.deadband)

    def run(self) -> List[LinkState]:
        """Cycle until the shutdown flag is seen, then drain. ExchangeError propagates."""
        self.ticker.reset()
        self._t0 = self.ticker.clock()
        while not self.shutdown.is_set():
            self.step()
            self._skipped = self.ticker.tick()
        log.info("shutdown after %d cycles", self.cycles)
        return self.drain()

    def drain(self) -> List[LinkState]:
        """Neutral valves, then OP -> SAFE-OP -> PRE-OP -> INIT. Returns the states that failed."""
        failed: List[LinkState] = []
        actuator = self.link.device(self.config.actuator_device)
        write_command(actuator.outputs if actuator else None, ActuationCommand.NEUTRAL)
        self.last_command = ActuationCommand.NEUTRAL
        if self.link.state >= LinkState.SAFE_OP:
            try:
                self.link.tx_rx()
            except LinkError as e:
                log.error("final neutral exchange failed: %s", e)
        for state in DRAIN_SEQUENCE:
            if self.link.state <= state:
                continue
            try:
                self.link.transition(state, force=True)
                log.info("link -> %s", state.label)
            except LinkError as e:
                failed.append(state)
                log.error("link -> %s failed: %s", state.label, e)
        return failed

    # ---------- one cycle ----------

    def read_sample(self) -> Optional[float]:
        name = self.config.sensor_device
        sensor = self.link.device(name)
        if sensor is None or not self.link.inputs_valid(name):
            return None
        return decode_sample(sensor.inputs, self.config.sensor_offset)

    def step(self) -> ActuationCommand:
        cfg = self.config
        self.link.tx_rx()

        new_sp = self.channel.take_if_ready()
        if new_sp is not None:
            self.controller.new_setpoint(new_sp)
            log.info("setpoint -> %.4f (requested %g)", self.controller.setpoint, new_sp)

        sample = self.read_sample()
        if sample is None:
            if not self._sample_missing:
                log.warning("no position sample from %r; holding valves neutral", cfg.sensor_device)
            else:
                log.debug("cycle %d: no position sample", self.cycles)
            self._sample_missing = True
            u = 0.0
        else:
            if self._sample_missing:
                log.info("position sample back after outage")
            self._sample_missing = False
            u = self.controller.control_signal(sample)

        command = actuate(u, cfg.deadband)
        actuator = self.link.device(cfg.actuator_device)
        if not write_command(actuator.outputs if actuator else None, command):
            log.debug("cycle %d: actuator %r has no output image", self.cycles, cfg.actuator_device)
        self.last_command = command

        if self.frame_bus is not None:
            now = self.ticker.clock()
            self.frame_bus.publish({
                "cycle": self.cycles,
                "t": now - (self._t0 if self._t0 is not None else now),
                "setpoint": self.controller.setpoint,
                "measurement": "" if sample is None else sample,
                "control_signal": u,
                "command": command.name,
                "missed_ticks": self._skipped,
            })
        self.cycles += 1
        return command
