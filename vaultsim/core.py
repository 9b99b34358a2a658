from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional, List, Iterator, Callable, Any
from collections import deque
from contextlib import contextmanager
import copy
import functools
import logging

logger = logging.getLogger(__name__)

MAX_BPS = 10_000
WAD = 10**18
SECONDS_PER_YEAR = 31_556_952
DEGRADATION_COEFFICIENT = 10**18
MAX_STRATEGIES = 20

ZERO_ADDRESS = ""
UNLIMITED = 2**256 - 1


def format_balances(balances: Dict[str, int]) -> str:
    if not balances:
        return "(empty)"
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{addr}:{amount}" for addr, amount in items)


def bps(amount: int, ratio: int) -> int:
    return amount * ratio // MAX_BPS


# -----------------------------
# Errors
# -----------------------------
class LedgerError(Exception):
    """Base failure; ``reason`` is a short machine-readable code."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class Unauthorized(LedgerError):
    pass


class InvariantViolation(LedgerError):
    pass


class InsufficientLiquidity(LedgerError):
    pass


class HealthCheckFailed(LedgerError):
    pass


class StateError(LedgerError):
    pass


class ReentrancyError(StateError):
    pass


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    timestamp: int
    event_type: str
    actor_id: Optional[str] = None
    pool_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)


class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]

    def last(self, event_type: str) -> Optional[Event]:
        for e in reversed(self.events):
            if e.event_type == event_type:
                return e
        return None


# -----------------------------
# Environment
# -----------------------------
class Environment:
    """Clock, address book, event log and all-or-nothing call semantics.

    Every ``Component`` registers itself here. ``atomic()`` snapshots the
    instance state of all registered components when the outermost call
    starts and writes it back in place if that call raises, so a failed
    operation leaves no partial mutation and no events behind.
    """

    def __init__(self, start_time: int = 1_700_000_000, event_log_maxlen: Optional[int] = None) -> None:
        self.now = int(start_time)
        self.events = EventLog(maxlen=event_log_maxlen)
        self.debug_balances: bool = False
        self.components: List[Component] = []
        self._counters: Dict[str, int] = {}
        self._depth = 0
        self._pending: List[Event] = []

    def new_address(self, prefix: str) -> str:
        n = self._counters.get(prefix, 0) + 1
        self._counters[prefix] = n
        return f"{prefix}_{n:04d}"

    def register(self, component: "Component") -> None:
        self.components.append(component)

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise InvariantViolation("negative_time")
        self.now += int(seconds)
        return self.now

    def emit(self, event_type: str, actor_id: Optional[str] = None, pool_id: Optional[str] = None,
             amount: Optional[int] = None, **meta: Any) -> Event:
        e = Event(self.now, event_type, actor_id, pool_id, amount, meta)
        if self._depth > 0:
            self._pending.append(e)
        else:
            self.events.add(e)
        return e

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _snapshot(self) -> Dict[int, dict]:
        memo: Dict[int, Any] = {id(self): self}
        for c in self.components:
            memo[id(c)] = c
        return {id(c): copy.deepcopy(c.__dict__, memo) for c in self.components}

    def _restore(self, saved: Dict[int, dict]) -> None:
        for c in self.components:
            state = saved.get(id(c))
            if state is None:
                # created inside the failed call; unreachable once parents roll back
                continue
            c.__dict__.clear()
            c.__dict__.update(state)
        self.components = [c for c in self.components if id(c) in saved]

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._depth > 0:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        saved = self._snapshot()
        self._depth = 1
        self._pending = []
        try:
            yield
        except BaseException:
            self._depth = 0
            self._pending = []
            self._restore(saved)
            raise
        self._depth = 0
        for e in self._pending:
            self.events.add(e)
        self._pending = []


class Component:
    """Anything holding ledger state inside an ``Environment``."""

    address_prefix = "component"

    def __init__(self, env: Environment, address: Optional[str] = None) -> None:
        self.env = env
        self.address = address or env.new_address(self.address_prefix)
        self._entered = False
        env.register(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.address}>"


def transactional(fn: Callable) -> Callable:
    """Single-entry, all-or-nothing wrapper for external operations."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        if self._entered:
            raise ReentrancyError("reentrant_call", f"{type(self).__name__}.{fn.__name__} re-entered")
        with self.env.atomic():
            self._entered = True
            try:
                return fn(self, *args, **kwargs)
            except LedgerError as exc:
                if self.env._depth == 1:
                    logger.warning("%s.%s rejected: %s", self.address, fn.__name__, exc.reason)
                raise
            finally:
                self._entered = False

    return wrapper


# -----------------------------
# Token
# -----------------------------
class Token(Component):
    """Minimal fungible balance ledger for the managed asset and venue receipts."""

    address_prefix = "token"

    def __init__(self, env: Environment, symbol: str, decimals: int = 18) -> None:
        super().__init__(env, address=f"token_{symbol.lower()}")
        self.symbol = symbol
        self.decimals = decimals
        self.balances: Dict[str, int] = {}
        self.total_supply = 0

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def _debug_balance_change(self, action: str, frm: str, to: str, amount: int,
                              before: Dict[str, int], after: Dict[str, int]) -> None:
        if not self.env.debug_balances or not logger.isEnabledFor(logging.DEBUG):
            return
        logger.debug(
            "[BAL] token=%s action=%s from=%s to=%s amount=%d before={ %s } after={ %s }",
            self.symbol,
            action,
            frm,
            to,
            amount,
            format_balances(before),
            format_balances(after),
        )

    def _touched(self, *accounts: str) -> Dict[str, int]:
        return {a: self.balance_of(a) for a in accounts if a}

    def transfer(self, to: str, amount: int, *, sender: str) -> None:
        amount = int(amount)
        if amount < 0:
            raise InvariantViolation("negative_amount")
        if not to:
            raise InvariantViolation("zero_address", "transfer to the zero address")
        have = self.balance_of(sender)
        if have < amount:
            raise InsufficientLiquidity("insufficient_balance", f"{sender} holds {have} {self.symbol}, needs {amount}")
        before = self._touched(sender, to)
        self.balances[sender] = have - amount
        self.balances[to] = self.balance_of(to) + amount
        self._debug_balance_change("transfer", sender, to, amount, before, self._touched(sender, to))

    def mint(self, to: str, amount: int) -> None:
        amount = int(amount)
        if amount < 0:
            raise InvariantViolation("negative_amount")
        before = self._touched(to)
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount
        self._debug_balance_change("mint", ZERO_ADDRESS, to, amount, before, self._touched(to))

    def burn(self, frm: str, amount: int) -> None:
        amount = int(amount)
        have = self.balance_of(frm)
        if have < amount:
            raise InsufficientLiquidity("insufficient_balance", f"{frm} cannot burn {amount} {self.symbol}")
        before = self._touched(frm)
        self.balances[frm] = have - amount
        self.total_supply -= amount
        self._debug_balance_change("burn", frm, ZERO_ADDRESS, amount, before, self._touched(frm))
