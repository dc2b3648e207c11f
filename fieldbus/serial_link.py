# fieldbus/serial_link.py
"""
Link to an I/O bridge (microcontroller acting as bus master) over a serial port.

Line protocol, ASCII, one request -> one reply:
  HELLO                   -> DEV:<name>:<in_len>:<out_len> ... END
  STATE:<INIT|PRE_OP|...> -> STATE:<NAME>:OK        | ERR:<text>
  XCHG:<dev>=<hex>;...    -> IN:<dev>=<hex>;...     | ERR:<text>
XCHG carries the output image of every device that has outputs,
IN carries the input image of every device that has inputs.
"""
import logging
import time
from typing import Dict, Optional

import serial

from controller.config import DEFAULT_BAUD, SERIAL_TIMEOUT_S

from .link import DeviceIO, ExchangeError, FieldbusLink, LinkError, LinkState

log = logging.getLogger(__name__)

ERR_PREFIX = "ERR:"


def _parse_images(payload: str) -> Dict[str, bytes]:
    """Parse 'dev=hex;dev=hex' into a dict. Raises ValueError on garbage."""
    out: Dict[str, bytes] = {}
    for item in payload.split(";"):
        item = item.strip()
        if not item:
            continue
        name, _, hexdata = item.partition("=")
        if not _:
            raise ValueError(f"missing '=' in {item!r}")
        out[name.strip()] = bytes.fromhex(hexdata.strip())
    return out


class SerialLink(FieldbusLink):
    def __init__(self, port: str, baudrate: int = DEFAULT_BAUD,
                 timeout: float = SERIAL_TIMEOUT_S, ser: Optional[serial.Serial] = None):
        super().__init__()
        self._stale = set()
        self.port = port
        self.timeout = float(timeout)
        try:
            self.ser = ser if ser is not None else serial.Serial(port, baudrate, timeout=timeout)
        except serial.SerialException as e:
            raise LinkError(f"cannot open {port}: {e}") from e
        # flush any startup noise
        try:
            self.ser.reset_input_buffer()
        except serial.SerialException:
            pass
        try:
            self._discover()
        except LinkError:
            self.close()
            raise

    # ---------- line I/O ----------

    def _write(self, cmd: str) -> None:
        try:
            self.ser.write((cmd + "\n").encode("ascii"))
        except serial.SerialException as e:
            raise LinkError(f"write failed on {self.port}: {e}") from e

    def _readline(self) -> str:
        try:
            return self.ser.readline().decode("ascii", errors="ignore").strip()
        except serial.SerialException as e:
            raise LinkError(f"read failed on {self.port}: {e}") from e

    def _request(self, cmd: str, prefix: str, error=LinkError) -> str:
        """Send `cmd`, skip unrelated lines, return the payload after `prefix`."""
        self._write(cmd)
        start = time.monotonic()
        resp = ""
        while time.monotonic() - start <= self.timeout:
            resp = self._readline()
            if resp.startswith(prefix):
                return resp[len(prefix):]
            if resp.startswith(ERR_PREFIX):
                raise error(f"{cmd.split(':', 1)[0]} rejected: {resp[len(ERR_PREFIX):]}")
            if resp:
                log.debug("ignored line from bridge: %r", resp)
        raise error(f"Timeout waiting for {prefix!r}, last line was: {resp!r}")

    # ---------- device table ----------

    def _discover(self) -> None:
        self._write("HELLO")
        start = time.monotonic()
        while True:
            resp = self._readline()
            if resp == "END":
                break
            if resp.startswith("DEV:"):
                try:
                    name, in_len, out_len = resp[4:].rsplit(":", 2)
                    dev = DeviceIO.sized(name, int(in_len), int(out_len))
                except ValueError as e:
                    raise LinkError(f"bad device line {resp!r}") from e
                self._devices[dev.name] = dev
                log.info("-> %s inputs: %d bytes, outputs: %d bytes",
                         dev.name, len(dev.inputs), len(dev.outputs))
            elif time.monotonic() - start > self.timeout:
                raise LinkError(f"Timeout waiting for device table, last line was: {resp!r}")
        log.info("Discovered %d devices on %s", len(self._devices), self.port)

    # ---------- FieldbusLink hooks ----------

    def _enter_state(self, target: LinkState) -> None:
        status = self._request(f"STATE:{target.name}", f"STATE:{target.name}:")
        if status != "OK":
            raise LinkError(f"bridge refused {target.label}: {status}")

    def _exchange(self) -> None:
        payload = ";".join(f"{d.name}={d.outputs.hex()}" for d in self._devices.values() if d.outputs)
        try:
            reply = self._request(f"XCHG:{payload}", "IN:", error=ExchangeError)
            images = _parse_images(reply)
        except ExchangeError:
            raise
        except ValueError as e:
            raise ExchangeError(f"malformed exchange reply: {e}") from e
        except LinkError as e:
            raise ExchangeError(str(e)) from e
        self._stale = set()
        for dev in self._devices.values():
            if not dev.inputs:
                continue
            image = images.get(dev.name)
            if image is None or len(image) != len(dev.inputs):
                # keep the old bytes but flag them; outputs of the device stay writable
                self._stale.add(dev.name)
                continue
            dev.inputs[:] = image

    def inputs_valid(self, name: str) -> bool:
        return name not in self._stale and super().inputs_valid(name)

    def close(self) -> None:
        try:
            self.ser.close()
        except serial.SerialException:
            pass
