# fieldbus/link.py
"""
Contract between the control loop and whatever owns the bus.

The link walks a four-state lifecycle (INIT <-> PRE_OP <-> SAFE_OP <-> OP,
adjacent steps only), exposes one fixed-size input and output image per
device, and performs one cyclic exchange per control period.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterable, Optional

log = logging.getLogger(__name__)


class LinkState(IntEnum):
    INIT    = 0   # idle
    PRE_OP  = 1
    SAFE_OP = 2
    OP      = 3

    @property
    def label(self) -> str:
        return self.name.replace("_", "-")


class LinkError(RuntimeError):
    """The bus side refused or failed a request."""


class LinkStateError(LinkError):
    """A lifecycle transition that skips a state or starts from the wrong one."""


class ExchangeError(LinkError):
    """The cyclic exchange did not complete; outputs of this cycle are lost."""


@dataclass
class DeviceIO:
    name: str
    inputs: bytearray = field(default_factory=bytearray)
    outputs: bytearray = field(default_factory=bytearray)

    @classmethod
    def sized(cls, name: str, in_len: int, out_len: int) -> "DeviceIO":
        return cls(name, bytearray(in_len), bytearray(out_len))


class FieldbusLink(ABC):
    """Base class for links. Subclasses do the talking; this class keeps the lifecycle honest."""

    def __init__(self, devices: Iterable[DeviceIO] = ()):
        self._state = LinkState.INIT
        self._devices: Dict[str, DeviceIO] = {d.name: d for d in devices}

    # ---------- lifecycle ----------

    @property
    def state(self) -> LinkState:
        return self._state

    def transition(self, target: LinkState, force: bool = False) -> None:
        """
        Move one step forward or backward. The state only changes if the step succeeds.
        `force` skips the single-step check; only the shutdown sequence uses it, so that
        one refused step does not strand the link above idle.
        """
        target = LinkState(target)
        if target == self._state:
            return
        if not force and abs(int(target) - int(self._state)) != 1:
            raise LinkStateError(f"{self._state.label} -> {target.label} is not a single step")
        self._enter_state(target)
        log.debug("link %s -> %s", self._state.label, target.label)
        self._state = target

    def reach_operational(self) -> None:
        """Walk forward from the current state up to OP."""
        while self._state < LinkState.OP:
            self.transition(LinkState(self._state + 1))

    # ---------- process data ----------

    @property
    def devices(self) -> Dict[str, DeviceIO]:
        return self._devices

    def device(self, name: str) -> Optional[DeviceIO]:
        return self._devices.get(name)

    def inputs_valid(self, name: str) -> bool:
        """True if `name` is on the bus and its input image was refreshed by the last exchange."""
        return name in self._devices

    def tx_rx(self) -> None:
        """Send every output image, refresh every input image."""
        if self._state < LinkState.SAFE_OP:
            raise ExchangeError(f"cyclic exchange not allowed in {self._state.label}")
        self._exchange()

    # ---------- subclass hooks ----------

    @abstractmethod
    def _enter_state(self, target: LinkState) -> None:
        """Ask the bus to enter `target`. Raise LinkError on refusal."""

    @abstractmethod
    def _exchange(self) -> None:
        """Do one exchange. Raise ExchangeError on failure."""

    def close(self) -> None:
        pass
