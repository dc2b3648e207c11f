#!/usr/bin/env python3
"""
Position servo for a pneumatic muscle cylinder.

    python main.py /dev/ttyACM0            # I/O bridge on a serial port
    python main.py sim --setpoint 0.3      # simulated cylinder

Type a new setpoint (0..1) and press Enter at any time. Ctrl-C stops the
loop, sets the valves neutral and takes the bus back to INIT.
"""
import argparse
import logging
import sys
from typing import List, Optional

from controller import config as cfg
from controller.config import LoopConfig
from controller.loop import ControlLoop, StartupError
from controller.pid import CylinderPositionController, Proportional, ProportionalIntegral
from controller.setpoint import SetpointChannel
from controller.shutdown import ShutdownFlag
from fieldbus.link import ExchangeError, FieldbusLink, LinkError
from utils.console_input import ConsoleInput
from utils.console_print import configure_console
from utils.io_worker import FrameBus, TraceWriter

log = logging.getLogger("main")

SIM_MEDIUM = "sim"

EXIT_OK = 0
EXIT_FATAL = 1


def _unit_interval(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}")
    if not 0.0 <= value <= 1.0:
        raise argparse.ArgumentTypeError(f"{value} is outside [0, 1]")
    return value


def _positive(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}")
    if value <= 0.0:
        raise argparse.ArgumentTypeError(f"{value} must be > 0")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="PI position servo for a pneumatic muscle cylinder.")
    ap.add_argument("medium", help=f"serial port of the I/O bridge, or '{SIM_MEDIUM}' for the simulator")
    ap.add_argument("--kp", type=float, default=cfg.DEFAULT_KP, help="proportional gain")
    ap.add_argument("--ki", type=float, default=cfg.DEFAULT_KI,
                    help="integral gain per cycle (0 = proportional only)")
    ap.add_argument("--setpoint", type=_unit_interval, default=cfg.DEFAULT_SETPOINT,
                    help="initial target, normalized stroke 0..1")
    ap.add_argument("--period-ms", type=_positive, default=cfg.PERIOD_S * 1000.0, help="cycle period")
    ap.add_argument("--deadband", type=float, default=cfg.DEADBAND, help="deadband half-width")
    ap.add_argument("--sensor", default=cfg.SENSOR_DEVICE, help="position sensor device name")
    ap.add_argument("--actuator", default=cfg.ACTUATOR_DEVICE, help="valve output device name")
    ap.add_argument("--sensor-offset", type=int, default=cfg.SENSOR_OFFSET,
                    help="byte offset of the position word in the sensor inputs")
    ap.add_argument("--baud", type=int, default=cfg.DEFAULT_BAUD, help="serial baud rate")
    ap.add_argument("--trace", metavar="BASE", help="write a per-cycle CSV trace to BASE_<ts>_NNN.csv")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return ap


def build_config(args: argparse.Namespace) -> LoopConfig:
    gains = ProportionalIntegral(args.kp, args.ki) if args.ki else Proportional(args.kp)
    return LoopConfig(
        period_s=args.period_ms / 1000.0,
        deadband=abs(args.deadband),
        gains=gains,
        setpoint=args.setpoint,
        sensor_device=args.sensor,
        actuator_device=args.actuator,
        sensor_offset=args.sensor_offset,
    )


def open_link(args: argparse.Namespace, config: LoopConfig) -> FieldbusLink:
    if args.medium == SIM_MEDIUM:
        from fieldbus.sim_link import CylinderPlant, SimulatedLink
        return SimulatedLink(
            plant=CylinderPlant(position=0.0, noise_std=0.002),
            sensor_device=config.sensor_device,
            actuator_device=config.actuator_device,
            sensor_offset=config.sensor_offset,
            period_s=config.period_s,
        )
    from fieldbus.serial_link import SerialLink
    return SerialLink(args.medium, baudrate=args.baud, timeout=max(config.period_s, cfg.SERIAL_TIMEOUT_S))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    configure_console(args.log_level)
    config = build_config(args)

    log.info("Starting cylinder servo on %s", args.medium)

    channel = SetpointChannel()
    shutdown = ShutdownFlag()
    controller = CylinderPositionController(config.gains, config.setpoint)

    try:
        link = open_link(args, config)
    except LinkError as e:
        log.critical("cannot open %s: %s", args.medium, e)
        return EXIT_FATAL

    trace = None
    frame_bus = None
    if args.trace:
        frame_bus = FrameBus()
        trace = TraceWriter(frame_bus.get_queue(), args.trace,
                            rotate_mb=cfg.TRACE_ROTATE_MB, flush_every=cfg.TRACE_FLUSH_EVERY)
        trace.start()

    loop = ControlLoop(link, controller, channel, shutdown, config, frame_bus=frame_bus)
    try:
        shutdown.install()
        try:
            ConsoleInput(channel).start()
        except RuntimeError as e:
            raise StartupError(f"console input did not start: {e}") from e
        loop.startup()
        log.info("Running. Enter a setpoint (0..1) and press Enter; Ctrl-C to stop.")
        failed = loop.run()
    except StartupError as e:
        log.critical("%s", e)
        loop.drain()
        return EXIT_FATAL
    except ExchangeError as e:
        log.critical("cyclic exchange failed after %d cycles, aborting: %s", loop.cycles, e)
        return EXIT_FATAL
    finally:
        if trace is not None:
            trace.stop()
            trace.join(timeout=2.0)
        link.close()

    if failed:
        log.warning("shutdown left the link in %s", link.state.label)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
