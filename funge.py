"""
Befunge engine: a sparse two-dimensional program grid, the
instruction-pointer machine that walks it, and the small raster canvas
the program can draw on.

A program is text laid out on an unbounded integer plane. The instruction
pointer starts at (0, 0) heading east; every visited cell is executed as
an opcode against a value stack. Execution is strictly step-at-a-time:
``State.step`` runs one instruction and reports how it went, and callers
(the scheduler in ``funge_session``) decide how many steps to run and when.

Graphics opcodes:
  s   pop height, width -> allocate a black canvas
  f   pop blue, green, red -> set the drawing color
  x   pop y, x -> paint one pixel
  c   fill the canvas with the drawing color
  l   pop y1, x1, y2, x2 -> draw a line
  u   present frame (reserved, does nothing)
  z   poll one queued input event (0 when the queue is empty)
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ClassVar, Iterator

import numpy as np
from numpy.typing import NDArray

log = logging.getLogger(__name__)

Pos = tuple[int, int]


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

SPACE: int = ord(" ")
QUOTE: int = ord('"')

# Near-origin cells live in a dense array: 0 <= x, y < ZERO_PAGE_SIZE
ZERO_PAGE_SIZE: int = 10

# Cells and stack entries are signed 64-bit values
I64_MIN: int = -(1 << 63)
I64_MAX: int = (1 << 63) - 1

# Pointer coordinates live in [0, COORD_WRAP); stepping off either end wraps
COORD_WRAP: int = I64_MAX + 1

# Runaway guard for space skipping
SKIP_SPACES_LIMIT: int = 1000

# History maps (telemetry for whatever draws the grid)
HISTORY_DEBOUNCE: float = 0.5   # seconds before an existing stamp is refreshed
HISTORY_RETENTION: float = 5.0  # default max age for prune_history()

# Largest canvas side `s` will allocate
MAX_CANVAS_SIDE: int = 4096

# Event tags pushed by `z`
EVENT_NONE: int = 0
EVENT_CLOSE: int = 1
EVENT_MOUSE_CLICK: int = 4

MAX_SCALAR: int = 0x10FFFF
# Cells holding these cannot be written back as program text
LINE_BREAKS: frozenset[int] = frozenset((ord("\n"), ord("\r")))
REPLACEMENT_CHAR: str = "\ufffd"


# ═══════════════════════════════════════════════════════════════════════
#  Errors and status codes
# ═══════════════════════════════════════════════════════════════════════

class FungeError(Exception):
    """Base class for errors raised by the engine and session layers."""


class SerializationError(FungeError, ValueError):
    """A grid holds a cell that cannot be written out as program text."""


class StepStatus(Enum):
    NORMAL = "normal"
    BREAKPOINT = "breakpoint"
    HALTED = "halted"
    ERROR = "error"


class ErrorKind(Enum):
    INVALID_OPERATION = "invalid operation"
    INPUT_EXHAUSTED = "input exhausted"
    UNIMPLEMENTED = "unimplemented"


class InvalidOperationBehaviour(Enum):
    """What the VM does when it meets a cell that is not an opcode."""
    REFLECT = "reflect"
    HALT = "halt"
    IGNORE = "ignore"


class Direction(Enum):
    NORTH = (0, -1)
    SOUTH = (0, 1)
    EAST = (1, 0)
    WEST = (-1, 0)

    def reverse(self) -> Direction:
        dx, dy = self.value
        return Direction((-dx, -dy))


@dataclass
class Settings:
    """Run options consumed by ``State.step``."""
    skip_spaces: bool = False
    invalid_operation_behaviour: InvalidOperationBehaviour = InvalidOperationBehaviour.HALT
    record_position_history: bool = True
    record_get_history: bool = True
    record_put_history: bool = True


DEFAULT_SETTINGS: Settings = Settings()


# ── Integer helpers ─────────────────────────────────────────────────────

def wrap_i64(value: int) -> int:
    """Fold an arbitrary int into the signed 64-bit range (two's complement)."""
    if I64_MIN <= value <= I64_MAX:
        return value
    return ((value - I64_MIN) & 0xFFFF_FFFF_FFFF_FFFF) + I64_MIN


def _div(b: int, a: int) -> int:
    # Truncating division; dividing by zero yields zero
    if a == 0:
        return 0
    q = abs(b) // abs(a)
    return q if (b < 0) == (a < 0) else -q


def _rem(b: int, a: int) -> int:
    if a == 0:
        return 0
    r = abs(b) % abs(a)
    return -r if b < 0 else r


def is_scalar(value: int) -> bool:
    """True if value is a Unicode scalar value (a code point, not a surrogate)."""
    return 0 <= value <= MAX_SCALAR and not 0xD800 <= value <= 0xDFFF


def describe_cell(value: int) -> str:
    if 0x20 <= value < 0x7F:
        return repr(chr(value))
    return str(value)


# ═══════════════════════════════════════════════════════════════════════
#  Grid store
# ═══════════════════════════════════════════════════════════════════════

class FungeSpace:
    """
    Sparse program memory over integer coordinates.

    Every unset cell reads as a space. Cells near the origin are kept in a
    dense 10x10 array that is always materialized; everything else lives in
    a dict that never stores spaces, so a space cell and an absent cell
    cannot be told apart.
    """

    def __init__(self) -> None:
        self._map: dict[Pos, int] = {}
        # Indexed [y, x]
        self._zero_page: NDArray[np.int64] = np.full(
            (ZERO_PAGE_SIZE, ZERO_PAGE_SIZE), SPACE, dtype=np.int64
        )

    @classmethod
    def from_string(cls, text: str) -> FungeSpace:
        """Load program text: one row per `\n`-separated line, a trailing `\r` dropped."""
        space = cls()
        for y, line in enumerate(text.split("\n")):
            for x, ch in enumerate(line.removesuffix("\r")):
                space.set((x, y), ord(ch))
        return space

    @staticmethod
    def in_zero_page(pos: Pos) -> bool:
        x, y = pos
        return 0 <= x < ZERO_PAGE_SIZE and 0 <= y < ZERO_PAGE_SIZE

    def set(self, pos: Pos, value: int) -> None:
        value = wrap_i64(value)
        x, y = pos
        if 0 <= x < ZERO_PAGE_SIZE and 0 <= y < ZERO_PAGE_SIZE:
            self._zero_page[y, x] = value
        elif value == SPACE:
            self._map.pop(pos, None)
        else:
            self._map[pos] = value

    def get(self, pos: Pos) -> int | None:
        x, y = pos
        if 0 <= x < ZERO_PAGE_SIZE and 0 <= y < ZERO_PAGE_SIZE:
            return int(self._zero_page[y, x])
        return self._map.get(pos)

    def get_wrapped(self, pos: Pos) -> int:
        """Like get(), but absent cells and negative coordinates read as space."""
        x, y = pos
        if x < 0 or y < 0:
            return SPACE
        if x < ZERO_PAGE_SIZE and y < ZERO_PAGE_SIZE:
            return int(self._zero_page[y, x])
        return self._map.get(pos, SPACE)

    def entries(self) -> Iterator[tuple[Pos, int]]:
        """Every materialized cell once: the sparse map, then the dense region."""
        yield from self._map.items()
        for (y, x), value in np.ndenumerate(self._zero_page):
            yield (x, y), int(value)

    def as_dict(self) -> dict[Pos, int]:
        """Coordinate -> value for every non-space cell."""
        return {pos: value for pos, value in self.entries() if value != SPACE}

    def copy(self) -> FungeSpace:
        dup = FungeSpace.__new__(FungeSpace)
        dup._map = dict(self._map)
        dup._zero_page = self._zero_page.copy()
        return dup

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FungeSpace):
            return NotImplemented
        return self.as_dict() == other.as_dict()

    def serialize(self) -> str:
        """
        Rebuild line-oriented program text from the grid.

        Rows run from 0 to the last row holding a non-space cell; each row
        is padded with spaces up to its last written column. Raises
        SerializationError for a value that is not a Unicode scalar, a line
        break, or a cell at a negative coordinate, since none of them can be
        written as text and read back unchanged.
        """
        rows: dict[int, dict[int, str]] = {}
        for (x, y), value in self.entries():
            if value == SPACE:
                continue
            if x < 0 or y < 0:
                raise SerializationError(
                    f"cell at {(x, y)} has a negative coordinate"
                )
            if not is_scalar(value):
                raise SerializationError(
                    f"cell at {(x, y)} holds {value}, which is not a Unicode scalar value"
                )
            if value in LINE_BREAKS:
                raise SerializationError(
                    f"cell at {(x, y)} holds a line break ({value}), which would split its row"
                )
            rows.setdefault(y, {})[x] = chr(value)

        if not rows:
            return ""

        lines: list[str] = []
        for y in range(max(rows) + 1):
            cells = rows.get(y)
            if not cells:
                lines.append("")
                continue
            chars = [" "] * (max(cells) + 1)
            for x, ch in cells.items():
                chars[x] = ch
            lines.append("".join(chars))
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════
#  Graphics sub-machine
# ═══════════════════════════════════════════════════════════════════════

class Event:
    """An externally produced input event, drained by the `z` opcode."""

    tag: ClassVar[int] = EVENT_NONE

    def payload(self) -> tuple[int, ...]:
        """Values pushed onto the stack, last one on top."""
        return (self.tag,)


@dataclass(frozen=True)
class CloseEvent(Event):
    tag: ClassVar[int] = EVENT_CLOSE


@dataclass(frozen=True)
class MouseClickEvent(Event):
    """A click already translated into canvas pixel coordinates."""
    x: int
    y: int

    tag: ClassVar[int] = EVENT_MOUSE_CLICK

    def payload(self) -> tuple[int, ...]:
        return (self.y, self.x, self.tag)


def _clip_span(start: int, count: int, limit: int) -> range:
    """Indices i in [0, count] with 0 <= start + i < limit."""
    return range(max(0, -start), min(count, limit - 1 - start) + 1)


def line_points(
    x1: int, y1: int, x2: int, y2: int, width: int, height: int
) -> Iterator[tuple[int, int]]:
    """
    Integer line from (x1, y1) to (x2, y2), endpoints included, any octant.

    Only points inside a width x height canvas are yielded. The walk runs
    along the major axis and computes the minor coordinate directly, so
    endpoints far outside the canvas cost nothing.
    """
    dx, dy = abs(x2 - x1), abs(y2 - y1)
    if dx == 0 and dy == 0:
        if 0 <= x1 < width and 0 <= y1 < height:
            yield x1, y1
        return

    # Walk from the end with the lower major coordinate so rounding ties
    # land on the same pixels in both directions
    if dx >= dy:
        flip = x2 < x1
        ax, ay, by = (x2, y2, y1) if flip else (x1, y1, y2)
        sy = 1 if by >= ay else -1
        span = _clip_span(ax, dx, width)
        for i in (reversed(span) if flip else span):
            y = ay + sy * ((2 * i * dy + dx) // (2 * dx))
            if 0 <= y < height:
                yield ax + i, y
    else:
        flip = y2 < y1
        ax, ay, bx = (x2, y2, x1) if flip else (x1, y1, x2)
        sx = 1 if bx >= ax else -1
        span = _clip_span(ay, dy, height)
        for i in (reversed(span) if flip else span):
            x = ax + sx * ((2 * i * dx + dy) // (2 * dy))
            if 0 <= x < width:
                yield x, ay + i


class Graphics:
    """
    Raster canvas plus an inbound event queue.

    Created by the `s` opcode and mutated only through the VM. The pixel
    buffer is row-major, shape (height, width, 3), one RGB triple per pixel.
    Pixel writes outside the canvas are dropped and counted.
    """

    def __init__(self, width: int, height: int) -> None:
        self.width: int = max(0, min(width, MAX_CANVAS_SIDE))
        self.height: int = max(0, min(height, MAX_CANVAS_SIDE))
        self.pixels: NDArray[np.uint8] = np.zeros(
            (self.height, self.width, 3), dtype=np.uint8
        )
        self.current_color: tuple[int, int, int] = (0, 0, 0)
        self.event_queue: deque[Event] = deque()
        self.dropped_pixels: int = 0

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    def set_color(self, r: int, g: int, b: int) -> None:
        self.current_color = (
            max(0, min(r, 255)),
            max(0, min(g, 255)),
            max(0, min(b, 255)),
        )

    def in_bounds(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def pixel(self, x: int, y: int) -> bool:
        if not self.in_bounds(x, y):
            self.dropped_pixels += 1
            log.debug("pixel (%d, %d) outside %dx%d canvas dropped",
                      x, y, self.width, self.height)
            return False
        self.pixels[y, x] = self.current_color
        return True

    def fill(self) -> None:
        self.pixels[:, :] = self.current_color

    def line(self, x1: int, y1: int, x2: int, y2: int) -> int:
        """Paint a line in the current color; returns pixels painted."""
        painted = 0
        for x, y in line_points(x1, y1, x2, y2, self.width, self.height):
            self.pixels[y, x] = self.current_color
            painted += 1
        return painted

    def push_event(self, event: Event) -> None:
        self.event_queue.append(event)

    def poll_event(self) -> Event | None:
        return self.event_queue.popleft() if self.event_queue else None


# ═══════════════════════════════════════════════════════════════════════
#  Interpreter
# ═══════════════════════════════════════════════════════════════════════

def _touch(history: dict[Pos, float], pos: Pos) -> None:
    now = time.monotonic()
    prev = history.get(pos)
    if prev is None or now - prev > HISTORY_DEBOUNCE:
        history[pos] = now


class State:
    """
    The instruction-pointer machine.

    Owns its grid, operand stack, I/O buffers, breakpoint set and (after
    `s`) a Graphics canvas. Popping an empty stack yields 0. Data-dependent
    trouble never raises: it comes back as a StepStatus, with the details in
    ``error`` / ``error_message``.
    """

    def __init__(self, space: FungeSpace | None = None) -> None:
        self.map: FungeSpace = space if space is not None else FungeSpace()
        self.position: Pos = (0, 0)
        self.direction: Direction = Direction.EAST
        self.stack: list[int] = []
        self.string_mode: bool = False
        self.output: str = ""
        self.input_buffer: str = ""
        self.breakpoints: set[Pos] = set()
        self.graphics: Graphics | None = None

        self.halted: bool = False
        self.awaiting_input: bool = False
        self.error: ErrorKind | None = None
        self.error_message: str = ""
        self.last_stop: ErrorKind | None = None
        self.steps: int = 0

        # Telemetry: coordinate -> monotonic stamp of the last visit
        self.pos_history: dict[Pos, float] = {}
        self.get_history: dict[Pos, float] = {}
        self.put_history: dict[Pos, float] = {}

        self._settings: Settings = DEFAULT_SETTINGS
        self._ops: dict[int, Callable[[], StepStatus | None]] = self._build_dispatch()

    @classmethod
    def from_string(cls, text: str) -> State:
        return cls(FungeSpace.from_string(text))

    # ── Stack ───────────────────────────────────────────────────────

    def push(self, value: int) -> None:
        self.stack.append(wrap_i64(value))

    def pop(self) -> int:
        return self.stack.pop() if self.stack else 0

    # ── Out-of-band input ───────────────────────────────────────────

    def push_input(self, text: str) -> None:
        self.input_buffer += text
        self.awaiting_input = False

    def push_event(self, event: Event) -> bool:
        if self.graphics is None:
            log.debug("event %r dropped: graphics not set up", event)
            return False
        self.graphics.push_event(event)
        return True

    def prune_history(self, max_age: float = HISTORY_RETENTION,
                      now: float | None = None) -> None:
        """Drop history stamps older than max_age seconds."""
        if now is None:
            now = time.monotonic()
        for history in (self.pos_history, self.get_history, self.put_history):
            stale = [pos for pos, stamp in history.items() if now - stamp >= max_age]
            for pos in stale:
                del history[pos]

    # ── Stepping ────────────────────────────────────────────────────

    def step(self, settings: Settings | None = None) -> StepStatus:
        """Execute the cell under the pointer, then advance."""
        if self.error is not None:
            return StepStatus.ERROR
        if self.halted:
            return StepStatus.HALTED
        if settings is None:
            settings = DEFAULT_SETTINGS
        self._settings = settings

        op = self.map.get_wrapped(self.position)
        if self.string_mode:
            if op == QUOTE:
                self.string_mode = False
            else:
                self.stack.append(op)
        else:
            handler = self._ops.get(op)
            if handler is None:
                return self._invalid_operation(op, settings)
            outcome = handler()
            if outcome is not None:
                return outcome

        self.steps += 1
        return self._advance(settings)

    def _move(self) -> None:
        if self._settings.record_position_history:
            _touch(self.pos_history, self.position)
        x, y = self.position
        dx, dy = self.direction.value
        x += dx
        y += dy
        if not 0 <= x < COORD_WRAP:
            x %= COORD_WRAP
        if not 0 <= y < COORD_WRAP:
            y %= COORD_WRAP
        self.position = (x, y)

    def _advance(self, settings: Settings) -> StepStatus:
        self._move()
        hit = self.position in self.breakpoints
        if settings.skip_spaces and not self.string_mode:
            guard = 0
            while (not hit and guard < SKIP_SPACES_LIMIT
                   and self.map.get_wrapped(self.position) == SPACE):
                self._move()
                guard += 1
                hit = self.position in self.breakpoints
        return StepStatus.BREAKPOINT if hit else StepStatus.NORMAL

    def _fail(self, kind: ErrorKind, message: str) -> StepStatus:
        self.error = kind
        self.error_message = message
        self.last_stop = kind
        log.warning("%s", message)
        return StepStatus.ERROR

    def _invalid_operation(self, op: int, settings: Settings) -> StepStatus:
        behaviour = settings.invalid_operation_behaviour
        where = self.position
        if behaviour is InvalidOperationBehaviour.HALT:
            return self._fail(
                ErrorKind.INVALID_OPERATION,
                f"invalid operation {describe_cell(op)} at {where}",
            )
        if behaviour is InvalidOperationBehaviour.REFLECT:
            self.direction = self.direction.reverse()
        log.debug("invalid operation %s at %s: %s", describe_cell(op), where,
                  behaviour.value)
        self.steps += 1
        return self._advance(settings)

    # ── Opcodes ─────────────────────────────────────────────────────

    def _build_dispatch(self) -> dict[int, Callable[[], StepStatus | None]]:
        ops: dict[str, Callable[[], StepStatus | None]] = {
            " ": self._op_noop,
            '"': self._op_string_mode,
            "+": self._op_add,
            "-": self._op_sub,
            "*": self._op_mul,
            "/": self._op_div,
            "%": self._op_rem,
            "`": self._op_greater,
            "\\": self._op_swap,
            "!": self._op_not,
            ":": self._op_dup,
            "$": self._op_discard,
            ">": lambda: self._op_turn(Direction.EAST),
            "<": lambda: self._op_turn(Direction.WEST),
            "^": lambda: self._op_turn(Direction.NORTH),
            "v": lambda: self._op_turn(Direction.SOUTH),
            "#": self._op_bridge,
            "_": self._op_branch_horizontal,
            "|": self._op_branch_vertical,
            "p": self._op_put,
            "g": self._op_get,
            "&": self._op_input_number,
            "~": self._op_input_char,
            "@": self._op_halt,
            ".": self._op_output_number,
            ",": self._op_output_char,
            "s": self._op_setup_graphics,
            "f": self._op_color,
            "x": self._op_pixel,
            "c": self._op_clear,
            "u": self._op_noop,
            "l": self._op_line,
            "z": self._op_poll_event,
        }
        table = {ord(ch): fn for ch, fn in ops.items()}
        for digit in range(10):
            table[ord("0") + digit] = (lambda d=digit: self.stack.append(d))
        return table

    def _op_noop(self) -> None:
        pass

    def _op_string_mode(self) -> None:
        self.string_mode = True

    def _op_add(self) -> None:
        a, b = self.pop(), self.pop()
        self.push(b + a)

    def _op_sub(self) -> None:
        a, b = self.pop(), self.pop()
        self.push(b - a)

    def _op_mul(self) -> None:
        a, b = self.pop(), self.pop()
        self.push(b * a)

    def _op_div(self) -> None:
        a, b = self.pop(), self.pop()
        self.push(_div(b, a))

    def _op_rem(self) -> None:
        a, b = self.pop(), self.pop()
        self.push(_rem(b, a))

    def _op_greater(self) -> None:
        a, b = self.pop(), self.pop()
        self.stack.append(1 if b > a else 0)

    def _op_swap(self) -> None:
        a, b = self.pop(), self.pop()
        self.stack.append(a)
        self.stack.append(b)

    def _op_not(self) -> None:
        self.stack.append(1 if self.pop() == 0 else 0)

    def _op_dup(self) -> None:
        a = self.pop()
        self.stack.append(a)
        self.stack.append(a)

    def _op_discard(self) -> None:
        self.pop()

    def _op_turn(self, direction: Direction) -> None:
        self.direction = direction

    def _op_bridge(self) -> None:
        self._move()

    def _op_branch_horizontal(self) -> None:
        self.direction = Direction.EAST if self.pop() == 0 else Direction.WEST

    def _op_branch_vertical(self) -> None:
        self.direction = Direction.SOUTH if self.pop() == 0 else Direction.NORTH

    def _op_put(self) -> None:
        y, x, value = self.pop(), self.pop(), self.pop()
        if x < 0 or y < 0:
            log.debug("put of %d at negative coordinate %s dropped", value, (x, y))
            return
        self.map.set((x, y), value)
        if self._settings.record_put_history:
            _touch(self.put_history, (x, y))

    def _op_get(self) -> None:
        y, x = self.pop(), self.pop()
        self.stack.append(self.map.get_wrapped((x, y)))
        if self._settings.record_get_history:
            _touch(self.get_history, (x, y))

    def _op_input_number(self) -> StepStatus:
        return self._fail(
            ErrorKind.UNIMPLEMENTED,
            f"numeric input (&) at {self.position} is not implemented",
        )

    def _op_input_char(self) -> StepStatus | None:
        if not self.input_buffer:
            # Stay on `~` so it runs again once input arrives
            self.awaiting_input = True
            self.last_stop = ErrorKind.INPUT_EXHAUSTED
            log.debug("input exhausted at %s", self.position)
            return StepStatus.BREAKPOINT
        ch, self.input_buffer = self.input_buffer[0], self.input_buffer[1:]
        self.stack.append(ord(ch))
        return None

    def _op_halt(self) -> StepStatus:
        self.halted = True
        self.steps += 1
        log.debug("halted at %s after %d steps", self.position, self.steps)
        return StepStatus.HALTED

    def _op_output_number(self) -> None:
        self.output += str(self.pop())

    def _op_output_char(self) -> None:
        code = self.pop() & 0xFFFF_FFFF
        self.output += chr(code) if is_scalar(code) else REPLACEMENT_CHAR

    # ── Graphics opcodes (no-ops until `s` has run) ─────────────────

    def _op_setup_graphics(self) -> None:
        height, width = self.pop(), self.pop()
        if width > MAX_CANVAS_SIDE or height > MAX_CANVAS_SIDE:
            log.warning("canvas %dx%d clamped to %d per side",
                        width, height, MAX_CANVAS_SIDE)
        self.graphics = Graphics(width, height)

    def _op_color(self) -> None:
        if self.graphics is None:
            return
        b, g, r = self.pop(), self.pop(), self.pop()
        self.graphics.set_color(r, g, b)

    def _op_pixel(self) -> None:
        if self.graphics is None:
            return
        y, x = self.pop(), self.pop()
        self.graphics.pixel(x, y)

    def _op_clear(self) -> None:
        if self.graphics is not None:
            self.graphics.fill()

    def _op_line(self) -> None:
        if self.graphics is None:
            return
        y1, x1 = self.pop(), self.pop()
        y2, x2 = self.pop(), self.pop()
        self.graphics.line(x1, y1, x2, y2)

    def _op_poll_event(self) -> None:
        if self.graphics is None:
            return
        event = self.graphics.poll_event()
        if event is None:
            self.stack.append(EVENT_NONE)
        else:
            self.stack.extend(event.payload())
