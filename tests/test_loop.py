import logging

import pytest

from controller.actuation import ActuationCommand, actuate
from controller.config import LoopConfig
from controller.conversions import encode_sample, read_command
from controller.loop import ControlLoop, StartupError, Ticker
from controller.pid import CylinderPositionController, Proportional, ProportionalIntegral
from controller.setpoint import SetpointChannel
from controller.shutdown import ShutdownFlag
from fieldbus.link import ExchangeError, LinkState
from fieldbus.sim_link import CylinderPlant, SimulatedLink
from utils.io_worker import FrameBus


class FakeClock:
    def __init__(self, t=0.0):
        self.t = t
        self.sleeps = []

    def __call__(self):
        return self.t

    def sleep(self, dt):
        self.sleeps.append(dt)
        self.t += dt


def _loop(link=None, gains=None, setpoint=0.5, deadband=0.01, shutdown=None, frame_bus=None):
    config = LoopConfig(period_s=1.0, deadband=deadband, gains=gains or Proportional(1.0), setpoint=setpoint)
    link = link or SimulatedLink(plant=CylinderPlant(position=0.0, speed=0.1), period_s=config.period_s)
    clock = FakeClock()
    loop = ControlLoop(
        link,
        CylinderPositionController(config.gains, config.setpoint),
        SetpointChannel(),
        shutdown or ShutdownFlag(),
        config,
        ticker=Ticker(config.period_s, clock=clock, sleep=clock.sleep),
        frame_bus=frame_bus,
    )
    return loop


def _pin_sensor(link, position):
    """Make the plant stand still at `position` so the next exchange reports it."""
    link.plant.position = position
    link.plant.speed = 0.0
    encode_sample(link.device("EL3004").inputs, link.sensor_offset, position)


# ---------- ticker ----------

def test_ticker_sleeps_to_next_boundary():
    clock = FakeClock()
    t = Ticker(1.0, clock=clock, sleep=clock.sleep)
    t.reset()
    clock.t = 0.25
    assert t.tick() == 0
    assert clock.sleeps == [0.75]
    assert clock.t == 1.0
    assert t.tick() == 0
    assert clock.t == 2.0


def test_ticker_skips_missed_ticks_instead_of_bursting():
    clock = FakeClock()
    t = Ticker(1.0, clock=clock, sleep=clock.sleep)
    t.reset()                 # next boundary at 1.0
    clock.t = 3.5             # overran 1.0, 2.0 and 3.0
    assert t.tick() == 2      # fires late once, 2.0 and 3.0 are dropped
    assert clock.sleeps == []
    assert t.tick() == 0      # waits for 4.0, not an immediate catch-up
    assert clock.sleeps == [0.5]
    assert t.missed == 2


def test_ticker_rejects_bad_period():
    with pytest.raises(ValueError):
        Ticker(0.0)


# ---------- startup ----------

def test_startup_reaches_op():
    loop = _loop()
    loop.startup()
    assert loop.link.state is LinkState.OP


def test_startup_fails_when_link_cannot_reach_op():
    loop = _loop(link=SimulatedLink(fail_states=[LinkState.OP]))
    with pytest.raises(StartupError, match="SAFE-OP"):
        loop.startup()


def test_startup_fails_without_actuator():
    loop = _loop(link=SimulatedLink(actuator_device="EL2042"))
    loop.config.actuator_device = "EL2008"
    with pytest.raises(StartupError, match="EL2008"):
        loop.startup()


def test_startup_tolerates_missing_sensor(caplog):
    link = SimulatedLink()
    link.drop_sensor = True
    loop = _loop(link=link)
    with caplog.at_level(logging.WARNING):
        loop.startup()
    assert "EL3004" in caplog.text


# ---------- cycles ----------

def test_step_drives_toward_setpoint_and_writes_output_byte():
    loop = _loop(setpoint=0.8)
    loop.startup()
    _pin_sensor(loop.link, 0.2)
    assert loop.step() is ActuationCommand.EXTEND
    assert read_command(loop.link.device("EL2042").outputs) is ActuationCommand.EXTEND

    _pin_sensor(loop.link, 0.95)
    assert loop.step() is ActuationCommand.RETRACT
    assert loop.link.device("EL2042").outputs[0] == 0b01


def test_step_inside_deadband_is_neutral():
    loop = _loop(setpoint=0.5, deadband=0.05)
    loop.startup()
    _pin_sensor(loop.link, 0.48)
    assert loop.step() is ActuationCommand.NEUTRAL


def test_new_setpoint_is_applied_before_control():
    loop = _loop(gains=ProportionalIntegral(1.0, 1.0), setpoint=0.5)
    loop.startup()
    _pin_sensor(loop.link, 0.5)
    loop.controller.control_signal(0.0)          # some stale integral
    loop.channel.write(1.7)
    assert loop.step() is ActuationCommand.EXTEND
    assert loop.controller.setpoint == 1.0
    assert loop.controller.error_accumulator == pytest.approx(0.5, abs=1e-4)
    assert loop.channel.take_if_ready() is None


def test_missing_sample_is_neutral_and_leaves_controller_alone():
    loop = _loop(gains=ProportionalIntegral(2.0, 0.5), setpoint=1.0)
    loop.startup()
    _pin_sensor(loop.link, 0.0)
    assert loop.step() is ActuationCommand.EXTEND
    acc = loop.controller.error_accumulator

    loop.link.drop_sensor = True
    for _ in range(3):
        assert loop.step() is actuate(0.0, loop.config.deadband)
        assert read_command(loop.link.device("EL2042").outputs) is ActuationCommand.NEUTRAL
    assert loop.controller.error_accumulator == acc


def test_missing_sample_logged_once_per_outage(caplog):
    loop = _loop()
    loop.startup()
    loop.link.drop_sensor = True
    with caplog.at_level(logging.WARNING, logger="controller.loop"):
        for _ in range(5):
            loop.step()
    assert len([r for r in caplog.records if r.levelno == logging.WARNING]) == 1


def test_frames_are_published_per_cycle():
    bus = FrameBus()
    loop = _loop(frame_bus=bus, setpoint=0.7)
    loop.startup()
    _pin_sensor(loop.link, 0.1)
    loop.step()
    loop.link.drop_sensor = True
    loop.step()
    q = bus.get_queue()
    first, second = q.get_nowait(), q.get_nowait()
    assert first["cycle"] == 0 and first["command"] == "EXTEND"
    assert first["measurement"] == pytest.approx(0.1, abs=1e-4)
    assert second["measurement"] == "" and second["control_signal"] == 0.0


def test_exchange_failure_propagates():
    link = SimulatedLink(fail_exchange_after=0)
    loop = _loop(link=link)
    loop.startup()
    with pytest.raises(ExchangeError):
        loop.step()


# ---------- run / drain ----------

class StopAfter(ShutdownFlag):
    def __init__(self, polls):
        super().__init__()
        self.polls = polls

    def is_set(self):
        self.polls -= 1
        if self.polls < 0:
            self.set()
        return super().is_set()


def test_run_cycles_until_shutdown_then_drains():
    link = SimulatedLink(plant=CylinderPlant(position=0.0, speed=0.1), period_s=1.0)
    loop = _loop(link=link, setpoint=0.5, shutdown=StopAfter(4))
    loop.startup()
    failed = loop.run()
    assert loop.cycles == 4
    assert failed == []
    assert link.state is LinkState.INIT
    assert link.visited[-3:] == [LinkState.SAFE_OP, LinkState.PRE_OP, LinkState.INIT]
    assert read_command(link.device("EL2042").outputs) is ActuationCommand.NEUTRAL
    assert link.exchanges == 5        # four cycles and the final neutral exchange


def test_run_with_flag_already_set_does_no_cycles():
    flag = ShutdownFlag()
    flag.set()
    loop = _loop(shutdown=flag)
    loop.startup()
    loop.run()
    assert loop.cycles == 0
    assert loop.link.state is LinkState.INIT


def test_drain_is_best_effort():
    link = SimulatedLink()
    loop = _loop(link=link)
    link.reach_operational()
    link.fail_states = {LinkState.SAFE_OP, LinkState.PRE_OP}
    failed = loop.drain()
    assert failed == [LinkState.SAFE_OP, LinkState.PRE_OP]
    assert link.state is LinkState.INIT


def test_run_does_not_drain_after_exchange_failure():
    link = SimulatedLink(fail_exchange_after=2)
    loop = _loop(link=link, shutdown=StopAfter(10))
    loop.startup()
    with pytest.raises(ExchangeError):
        loop.run()
    assert loop.cycles == 2
    assert link.state is LinkState.OP


def test_closed_loop_settles_near_setpoint():
    link = SimulatedLink(plant=CylinderPlant(position=0.0, speed=0.05), period_s=1.0)
    loop = _loop(link=link, gains=Proportional(4.0), setpoint=0.6, deadband=0.2)
    loop.startup()
    for _ in range(40):
        loop.step()
    assert link.plant.position == pytest.approx(0.6, abs=0.06)
    assert loop.last_command is ActuationCommand.NEUTRAL
