#!/usr/bin/env python3
"""
Headless runner for Befunge programs.

Loads a program file into a Session, swaps to Playing and drives the
scheduler the way an editor's frame loop would, printing program output
as it appears.

Usage:
  python3 funge_run.py hello.bf                  # top speed until @
  python3 funge_run.py prog.bf --speed 3         # watchable pace
  python3 funge_run.py prog.bf --stdin           # feed ~ from stdin
  python3 funge_run.py prog.bf --break 4,0       # report each visit to (4, 0)
  python3 funge_run.py prog.bf --stats run.csv   # per-tick telemetry
  python3 funge_run.py draw.bf --canvas out.ppm  # save the graphics canvas

Set FUNGE_LOG=path (or FUNGE_DEBUG=1) to write a diagnostic log.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import IO, ClassVar, TextIO

import numpy as np
from numpy.typing import NDArray

from funge import InvalidOperationBehaviour, Pos, Settings, State, StepStatus
from funge_session import CHUNK_SIZE, SPEED_MAX, Playing, Session, TickReport

DEFAULT_LOG_FILE: str = "funge.log"

EXIT_OK: int = 0
EXIT_VM_ERROR: int = 1
EXIT_IO_ERROR: int = 2


# ═══════════════════════════════════════════════════════════════════════
#  Logging setup
# ═══════════════════════════════════════════════════════════════════════

def configure_logging(level: str | None = None) -> None:
    """
    Enable the diagnostic log when asked for.

    FUNGE_LOG names a log file (any truthy flag value picks funge.log);
    FUNGE_DEBUG does the same at DEBUG level. Without either, --log-level
    alone logs to stderr.
    """
    target = os.environ.get("FUNGE_LOG") or os.environ.get("FUNGE_DEBUG")
    if level is None and not target:
        return
    if level is None:
        level = "DEBUG" if os.environ.get("FUNGE_DEBUG") else "INFO"

    kwargs: dict[str, object] = {
        "level": getattr(logging, level.upper(), logging.INFO),
        "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        "force": True,
    }
    if target:
        if target.lower() in ("1", "true", "yes", "on"):
            target = DEFAULT_LOG_FILE
        kwargs["filename"] = target
        kwargs["filemode"] = "w"
    logging.basicConfig(**kwargs)  # type: ignore[arg-type]
    logging.getLogger(__name__).info("funge-run starting")


# ═══════════════════════════════════════════════════════════════════════
#  Stats logger
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes per-tick run telemetry to CSV."""

    HEADER: ClassVar[str] = (
        "tick,time_s,steps,total_steps,stack_depth,x,y,status,event\n"
    )

    def __init__(self, path: Path | None) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()
        self._tick: int = 0

    def open(self) -> None:
        if self._path is None:
            return
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError:
            self._fh = None

    def log(self, report: TickReport, state: State, event: str = "") -> None:
        self._tick += 1
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        x, y = state.position
        self._fh.write(
            f"{self._tick},{t:.3f},{report.steps},{state.steps},"
            f"{len(state.stack)},{x},{y},{report.status.value},{event}\n"
        )
        # Flush on events or periodically
        if event or self._tick % 50 == 0:
            try:
                self._fh.flush()
            except OSError:
                pass

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def parse_pos(text: str) -> Pos:
    """Parse "X,Y" into a coordinate pair."""
    try:
        x_str, y_str = text.split(",")
        return int(x_str), int(y_str)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected X,Y but got {text!r}") from None


def write_ppm(path: Path, pixels: NDArray[np.uint8]) -> None:
    """Save an (h, w, 3) uint8 buffer as binary PPM."""
    height, width = pixels.shape[:2]
    header = f"P6\n{width} {height}\n255\n".encode("ascii")
    with open(path, "wb") as fh:
        fh.write(header)
        fh.write(np.ascontiguousarray(pixels, dtype=np.uint8).tobytes())


def describe_stop(state: State) -> str:
    x, y = state.position
    top = state.stack[-8:]
    more = "..., " if len(state.stack) > 8 else ""
    return f"({x}, {y}) stack=[{more}{', '.join(str(v) for v in top)}]"


# ═══════════════════════════════════════════════════════════════════════
#  Run loop
# ═══════════════════════════════════════════════════════════════════════

def run_session(
    session: Session,
    *,
    max_steps: int | None = None,
    stdin: TextIO | None = None,
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
    stats: StatsLogger | None = None,
    throttle: bool = True,
) -> int:
    """
    Play the session's program until it halts, fails or runs out of input.

    Returns a process exit status. Breakpoints are reported on ``err`` and
    the run continues; input exhaustion reads a line from ``stdin`` when
    one is given, otherwise ends the run.
    """
    if not session.playing:
        session.swap_mode()
    mode = session.mode
    assert isinstance(mode, Playing)
    session.run()

    printed = 0
    while True:
        state = mode.state
        if throttle:
            wait = mode.scheduler.time_until_due()
            if wait > 0:
                time.sleep(wait)
            report = session.update()
        else:
            report = session.run_steps(CHUNK_SIZE)

        if len(state.output) > printed:
            out.write(state.output[printed:])
            out.flush()
            printed = len(state.output)

        event = ""
        if report.status is StepStatus.BREAKPOINT:
            event = "input" if state.awaiting_input else "breakpoint"
        elif report.stopped:
            event = report.status.value
        if stats is not None and report.steps:
            stats.log(report, state, event)

        if report.status is StepStatus.HALTED:
            return EXIT_OK
        if report.status is StepStatus.ERROR:
            print(f"\nerror: {state.error_message}", file=err)
            return EXIT_VM_ERROR
        if report.status is StepStatus.BREAKPOINT:
            if state.awaiting_input:
                line = stdin.readline() if stdin is not None else ""
                if not line:
                    print(f"\nwaiting for input at {describe_stop(state)}", file=err)
                    return EXIT_OK
                session.push_input(line)
            else:
                print(f"\nbreakpoint at {describe_stop(state)}", file=err)
            session.run()
        if max_steps is not None and state.steps >= max_steps:
            print(f"\nstep limit {max_steps} reached at {describe_stop(state)}", file=err)
            return EXIT_OK


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a Befunge program headlessly")
    parser.add_argument("program", type=Path, help="Program source file")
    parser.add_argument("--speed", type=int, default=SPEED_MAX,
                        help=f"Speed level 1-{SPEED_MAX} (default: {SPEED_MAX})")
    parser.add_argument("--skip-spaces", action="store_true",
                        help="Glide over runs of spaces in a single step")
    parser.add_argument("--invalid", choices=[b.value for b in InvalidOperationBehaviour],
                        default=InvalidOperationBehaviour.HALT.value,
                        help="What to do on an unknown opcode (default: halt)")
    parser.add_argument("--input", type=str, default="",
                        help="Text queued for the ~ opcode before the run")
    parser.add_argument("--stdin", action="store_true",
                        help="Read a line from stdin whenever ~ runs dry")
    parser.add_argument("--break", dest="breakpoints", type=parse_pos,
                        action="append", default=[], metavar="X,Y",
                        help="Breakpoint coordinate (repeatable)")
    parser.add_argument("--max-steps", type=int, default=None,
                        help="Stop after this many steps")
    parser.add_argument("--stats", type=Path, default=None,
                        help="Write per-tick telemetry CSV to this path")
    parser.add_argument("--canvas", type=Path, default=None,
                        help="Save the graphics canvas as PPM when the run ends")
    parser.add_argument("--log-level", type=str, default=None,
                        help="Diagnostic log level (DEBUG, INFO, WARNING)")
    parser.add_argument("--no-sleep", action="store_true",
                        help="Ignore the speed cadence and run flat out")
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        source = args.program.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Error: cannot read {args.program}: {exc}", file=sys.stderr)
        sys.exit(EXIT_IO_ERROR)

    settings = Settings(
        skip_spaces=args.skip_spaces,
        invalid_operation_behaviour=InvalidOperationBehaviour(args.invalid),
        record_position_history=False,
        record_get_history=False,
        record_put_history=False,
    )
    session = Session(settings)
    session.load(source)
    for pos in args.breakpoints:
        session.toggle_breakpoint(pos)
    session.swap_mode()
    session.set_speed(args.speed)
    if args.input:
        session.push_input(args.input)

    stats = StatsLogger(args.stats)
    stats.open()
    try:
        status = run_session(
            session,
            max_steps=args.max_steps,
            stdin=sys.stdin if args.stdin else None,
            stats=stats,
            throttle=not args.no_sleep,
        )
    except KeyboardInterrupt:
        status = EXIT_OK
    finally:
        stats.close()

    graphics = session.state.graphics
    if args.canvas is not None:
        if graphics is None:
            print("note: program never set up graphics; no canvas written",
                  file=sys.stderr)
        else:
            try:
                write_ppm(args.canvas, graphics.pixels)
            except OSError as exc:
                print(f"Error: cannot write {args.canvas}: {exc}", file=sys.stderr)
                sys.exit(EXIT_IO_ERROR)

    print()
    sys.exit(status)


if __name__ == "__main__":
    main()
