"""
Running a Befunge program interactively.

Two pieces sit on top of the engine in ``funge``:

  Scheduler   turns a speed level (1-20) into a bounded batch of VM steps
              per scheduling tick. The top levels run 10,000-step chunks
              until a short wall-clock budget is spent, then yield back to
              the caller's loop.
  Session     the editor's two modes. Editing owns a grid and a typing
              cursor; Playing owns a VM built from a pristine snapshot of
              that grid. Leaving Playing throws the VM away and restores
              the snapshot, so self-modifying runs never touch the source.

Everything is single-threaded: the host loop calls ``Session.update`` once
per frame and the VM runs synchronously inside that call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from funge import (
    DEFAULT_SETTINGS,
    Direction,
    Event,
    FungeError,
    FungeSpace,
    Pos,
    Settings,
    State,
    StepStatus,
)

log = logging.getLogger(__name__)

Clock = Callable[[], float]


# ═══════════════════════════════════════════════════════════════════════
#  Speed policy
# ═══════════════════════════════════════════════════════════════════════

SPEED_MIN: int = 1
SPEED_MAX: int = 20
DEFAULT_SPEED: int = 1

# Levels 1-5 step once per interval: 1 Hz, 2 Hz, 4 Hz, 8 Hz, 16 Hz
SINGLE_STEP_MAX: int = 5
# Levels 6 and up run a batch at 32 Hz
BATCH_INTERVAL: float = 1.0 / 32.0
SMALL_BATCH_MAX: int = 9
POW2_BATCH_MAX: int = 15

# Levels 16-20 run chunks until the budget is spent
TOP_TIER_MIN: int = 16
CHUNK_SIZE: int = 10_000
TOP_TIER_BUDGET_MS: dict[int, float] = {
    16: 4.0,
    17: 8.0,
    18: 16.0,
    19: 32.0,
    20: 32.0,
}


def clamp_speed(speed: int) -> int:
    return max(SPEED_MIN, min(speed, SPEED_MAX))


def step_interval(speed: int) -> float:
    """Minimum seconds between ticks at this speed level."""
    speed = clamp_speed(speed)
    if speed <= SINGLE_STEP_MAX:
        return 1.0 / (1 << (speed - 1))
    return BATCH_INTERVAL


def batch_size(speed: int) -> int | None:
    """Steps per tick, or None for the time-budgeted top tier."""
    speed = clamp_speed(speed)
    if speed <= SINGLE_STEP_MAX:
        return 1
    if speed <= SMALL_BATCH_MAX:
        return speed - 6 + 1
    if speed <= POW2_BATCH_MAX:
        return 1 << (speed - 8)
    return None


@dataclass
class TickReport:
    """What one scheduling tick did."""
    steps: int = 0
    status: StepStatus = StepStatus.NORMAL
    elapsed: float = 0.0
    ran: bool = False  # False when the tick interval had not elapsed yet

    @property
    def stopped(self) -> bool:
        return self.status is not StepStatus.NORMAL


class Scheduler:
    """
    Variable-rate driver for a State.

    Call tick() from the host loop as often as you like; it runs nothing
    until the interval for the current speed has elapsed. Any step that
    comes back as anything but NORMAL ends the batch at once.
    """

    def __init__(self, speed: int = DEFAULT_SPEED,
                 clock: Clock = time.perf_counter) -> None:
        self.clock: Clock = clock
        self._speed: int = clamp_speed(speed)
        self._last_tick: float | None = None

    @property
    def speed(self) -> int:
        return self._speed

    @speed.setter
    def speed(self, value: int) -> None:
        self._speed = clamp_speed(value)

    def time_until_due(self) -> float:
        if self._last_tick is None:
            return 0.0
        remaining = step_interval(self._speed) - (self.clock() - self._last_tick)
        return max(0.0, remaining)

    def tick(self, state: State, settings: Settings | None = None,
             budget_ms: float | None = None) -> TickReport:
        now = self.clock()
        if (self._last_tick is not None
                and now - self._last_tick < step_interval(self._speed)):
            return TickReport()
        report = self.run_batch(state, settings, budget_ms)
        self._last_tick = self.clock()
        return report

    def run_batch(self, state: State, settings: Settings | None = None,
                  budget_ms: float | None = None) -> TickReport:
        """One tick's worth of steps for the current speed, ignoring cadence."""
        if settings is None:
            settings = DEFAULT_SETTINGS
        size = batch_size(self._speed)
        if size is None:
            if budget_ms is None:
                budget_ms = TOP_TIER_BUDGET_MS[self._speed]
            return self._run_budgeted(state, settings, budget_ms / 1000.0)

        start = self.clock()
        status = StepStatus.NORMAL
        steps = 0
        for _ in range(size):
            status = state.step(settings)
            steps += 1
            if status is not StepStatus.NORMAL:
                break
        return TickReport(steps, status, self.clock() - start, True)

    def _run_budgeted(self, state: State, settings: Settings,
                      budget: float) -> TickReport:
        start = self.clock()
        steps = 0
        step = state.step
        normal = StepStatus.NORMAL
        while True:
            for _ in range(CHUNK_SIZE):
                status = step(settings)
                steps += 1
                if status is not normal:
                    return TickReport(steps, status, self.clock() - start, True)
            elapsed = self.clock() - start
            if elapsed >= budget:
                return TickReport(steps, normal, elapsed, True)

    def run_until_stop(self, state: State, settings: Settings | None = None,
                       max_steps: int = CHUNK_SIZE) -> TickReport:
        """Run up to max_steps steps or until a step is not NORMAL."""
        if settings is None:
            settings = DEFAULT_SETTINGS
        start = self.clock()
        status = StepStatus.NORMAL
        steps = 0
        while steps < max_steps:
            status = state.step(settings)
            steps += 1
            if status is not StepStatus.NORMAL:
                break
        return TickReport(steps, status, self.clock() - start, True)


# ═══════════════════════════════════════════════════════════════════════
#  Edit cursor
# ═══════════════════════════════════════════════════════════════════════

_TURNS: dict[str, Direction] = {
    ">": Direction.EAST,
    "<": Direction.WEST,
    "^": Direction.NORTH,
    "v": Direction.SOUTH,
}


@dataclass
class EditCursor:
    """
    Typing cursor for Editing mode.

    It moves like the instruction pointer would: typing an arrow turns it,
    and typing a quote toggles string mode so arrows inside strings are
    written without turning. It never leaves the non-negative quadrant.
    """
    location: Pos = (0, 0)
    direction: Direction = Direction.EAST
    string_mode: bool = False

    def _shift(self, sign: int) -> None:
        x, y = self.location
        dx, dy = self.direction.value
        self.location = (max(0, x + sign * dx), max(0, y + sign * dy))

    def advance(self) -> None:
        self._shift(1)

    def retreat(self) -> None:
        self._shift(-1)

    def turn(self, direction: Direction) -> None:
        self.direction = direction
        self.advance()

    def type_char(self, grid: FungeSpace, ch: str) -> None:
        grid.set(self.location, ord(ch))
        if ch == '"':
            self.string_mode = not self.string_mode
        elif not self.string_mode and ch in _TURNS:
            self.direction = _TURNS[ch]
        self.advance()

    def paste(self, grid: FungeSpace, text: str) -> None:
        """Write text as a block; every line starts at the cursor column."""
        x0, y = self.location
        for line in text.split("\n"):
            for offset, ch in enumerate(line.removesuffix("\r")):
                grid.set((x0 + offset, y), ord(ch))
            y += 1


# ═══════════════════════════════════════════════════════════════════════
#  Session modes
# ═══════════════════════════════════════════════════════════════════════

class ModeError(FungeError):
    """An operation was requested in the wrong session mode."""


@dataclass
class Editing:
    grid: FungeSpace = field(default_factory=FungeSpace)
    cursor: EditCursor = field(default_factory=EditCursor)
    breakpoints: set[Pos] = field(default_factory=set)


@dataclass
class Playing:
    snapshot: FungeSpace
    state: State
    scheduler: Scheduler
    running: bool = False
    follow: bool = False
    error: str | None = None

    @property
    def speed(self) -> int:
        return self.scheduler.speed


class Session:
    """
    Editing/Playing mode machine around one program.

    ``swap_mode`` is the only transition. Entering Playing snapshots the
    grid and builds a fresh VM from a copy of it; leaving Playing restores
    the snapshot and puts the edit cursor where the VM stopped.
    """

    def __init__(self, settings: Settings | None = None,
                 clock: Clock = time.perf_counter) -> None:
        self.settings: Settings = settings if settings is not None else Settings()
        self.clock: Clock = clock
        self.mode: Editing | Playing = Editing()

    @property
    def playing(self) -> bool:
        return isinstance(self.mode, Playing)

    def _editing(self) -> Editing:
        if not isinstance(self.mode, Editing):
            raise ModeError("not available while playing")
        return self.mode

    def _playing(self) -> Playing:
        if not isinstance(self.mode, Playing):
            raise ModeError("not available while editing")
        return self.mode

    # ── Transitions ─────────────────────────────────────────────────

    def swap_mode(self) -> Editing | Playing:
        mode = self.mode
        if isinstance(mode, Editing):
            snapshot = mode.grid.copy()
            state = State(snapshot.copy())
            state.breakpoints = set(mode.breakpoints)
            self.mode = Playing(
                snapshot=snapshot,
                state=state,
                scheduler=Scheduler(DEFAULT_SPEED, self.clock),
            )
            log.info("editing -> playing (%d breakpoints)", len(state.breakpoints))
        else:
            state = mode.state
            self.mode = Editing(
                grid=mode.snapshot,
                cursor=EditCursor(location=state.position),
                breakpoints=set(state.breakpoints),
            )
            log.info("playing -> editing after %d steps, cursor at %s",
                     state.steps, state.position)
        return self.mode

    def reset(self) -> Playing:
        """Rebuild the VM from the snapshot, keeping breakpoints and speed."""
        mode = self._playing()
        state = State(mode.snapshot.copy())
        state.breakpoints = set(mode.state.breakpoints)
        mode.state = state
        mode.running = False
        mode.error = None
        log.info("run reset")
        return mode

    def load(self, text: str) -> Editing:
        """Replace the program; always lands in Editing."""
        self.mode = Editing(grid=FungeSpace.from_string(text))
        log.info("loaded program (%d lines)", text.count("\n") + 1)
        return self.mode

    def new_file(self) -> Editing:
        self.mode = Editing()
        return self.mode

    def serialize(self) -> str:
        mode = self.mode
        grid = mode.grid if isinstance(mode, Editing) else mode.snapshot
        return grid.serialize()

    # ── Editing ─────────────────────────────────────────────────────

    @property
    def grid(self) -> FungeSpace:
        """The grid currently on screen: the edit grid or the VM's live grid."""
        mode = self.mode
        return mode.grid if isinstance(mode, Editing) else mode.state.map

    def type_char(self, ch: str) -> None:
        mode = self._editing()
        mode.cursor.type_char(mode.grid, ch)

    def type_text(self, text: str) -> None:
        for ch in text:
            self.type_char(ch)

    def paste(self, text: str) -> None:
        mode = self._editing()
        mode.cursor.paste(mode.grid, text)

    def move_cursor(self, direction: Direction) -> None:
        self._editing().cursor.turn(direction)

    def set_cursor(self, pos: Pos) -> None:
        x, y = pos
        self._editing().cursor.location = (max(0, x), max(0, y))

    def backspace(self) -> None:
        self._editing().cursor.retreat()

    def toggle_breakpoint(self, pos: Pos) -> bool:
        """Flip a breakpoint in either mode; returns True if it is now set."""
        mode = self.mode
        points = mode.breakpoints if isinstance(mode, Editing) else mode.state.breakpoints
        if pos in points:
            points.discard(pos)
            return False
        points.add(pos)
        return True

    # ── Playing ─────────────────────────────────────────────────────

    @property
    def state(self) -> State:
        return self._playing().state

    def run(self) -> None:
        mode = self._playing()
        if mode.error is not None:
            log.info("run refused: %s (reset first)", mode.error)
            return
        mode.running = True

    def pause(self) -> None:
        self._playing().running = False

    def toggle_follow(self) -> bool:
        mode = self._playing()
        mode.follow = not mode.follow
        return mode.follow

    def set_speed(self, speed: int) -> int:
        mode = self._playing()
        mode.scheduler.speed = speed
        return mode.scheduler.speed

    def step_once(self) -> StepStatus:
        """Manual single step; breakpoints do not stop it."""
        mode = self._playing()
        status = mode.state.step(self.settings)
        self._note_status(mode, status)
        return status

    def update(self) -> TickReport:
        """One host-loop tick: run a scheduler batch if the run is live."""
        mode = self._playing()
        if not mode.running or mode.error is not None:
            return TickReport()
        report = mode.scheduler.tick(mode.state, self.settings)
        self._finish(mode, report)
        return report

    def run_steps(self, max_steps: int = CHUNK_SIZE) -> TickReport:
        """Like update(), but ignores the speed cadence and runs up to max_steps."""
        mode = self._playing()
        if not mode.running or mode.error is not None:
            return TickReport()
        report = mode.scheduler.run_until_stop(mode.state, self.settings, max_steps)
        self._finish(mode, report)
        return report

    def _finish(self, mode: Playing, report: TickReport) -> None:
        if report.stopped:
            mode.running = False
            self._note_status(mode, report.status)

    def _note_status(self, mode: Playing, status: StepStatus) -> None:
        if status is StepStatus.ERROR and mode.error is None:
            mode.error = mode.state.error_message
            mode.running = False

    def push_input(self, text: str) -> None:
        self._playing().state.push_input(text)

    def push_event(self, event: Event) -> bool:
        return self._playing().state.push_event(event)
