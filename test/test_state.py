import time
import unittest

from funge import (
    COORD_WRAP,
    I64_MAX,
    I64_MIN,
    REPLACEMENT_CHAR,
    SKIP_SPACES_LIMIT,
    Direction,
    ErrorKind,
    InvalidOperationBehaviour,
    Settings,
    State,
    StepStatus,
    wrap_i64,
)


def run(state, settings=None, max_steps=1000):
    """Step until something other than NORMAL comes back."""
    status = StepStatus.NORMAL
    for _ in range(max_steps):
        status = state.step(settings)
        if status is not StepStatus.NORMAL:
            break
    return status


def output_of(source, settings=None):
    state = State.from_string(source)
    status = run(state, settings)
    assert status is StepStatus.HALTED, status
    return state.output


class StackTestCase(unittest.TestCase):
    def test_push_pop(self):
        state = State()
        state.push(42)
        self.assertEqual(42, state.pop())

    def test_underflow_yields_zero(self):
        state = State()
        self.assertEqual(0, state.pop())
        self.assertEqual(0, state.pop())
        self.assertEqual([], state.stack)

    def test_values_wrap_to_64_bits(self):
        self.assertEqual(I64_MIN, wrap_i64(I64_MAX + 1))
        self.assertEqual(I64_MAX, wrap_i64(I64_MIN - 1))
        self.assertEqual(-5, wrap_i64(-5))
        state = State()
        state.push(1 << 64)
        self.assertEqual(0, state.pop())


class ArithmeticTestCase(unittest.TestCase):
    def test_subtract_pop_order(self):
        self.assertEqual("2", output_of("5 3 - .@"))

    def test_operators(self):
        cases = {
            "23+.@": "5",
            "23*.@": "6",
            "73/.@": "2",
            "73%.@": "1",
            "07-2/.@": "-3",
            "07-2%.@": "-1",
            "50/.@": "0",
            "50%.@": "0",
            "53`.@": "1",
            "35`.@": "0",
            "0!.@": "1",
            "7!.@": "0",
            "12\\..@": "12",
            "3:..@": "33",
            "12$.@": "1",
        }
        for source, expected in cases.items():
            with self.subTest(source=source):
                self.assertEqual(expected, output_of(source))

    def test_character_output(self):
        self.assertEqual("ab", output_of('"ba",,@'))

    def test_non_scalar_character_output(self):
        self.assertEqual(REPLACEMENT_CHAR, output_of("01-,@"))


class FlowTestCase(unittest.TestCase):
    def branch(self, op, value):
        state = State.from_string(op)
        state.push(value)
        state.step()
        return state.direction

    def test_horizontal_branch(self):
        self.assertIs(Direction.EAST, self.branch("_", 0))
        self.assertIs(Direction.WEST, self.branch("_", 3))
        self.assertIs(Direction.WEST, self.branch("_", -1))

    def test_vertical_branch(self):
        self.assertIs(Direction.SOUTH, self.branch("|", 0))
        self.assertIs(Direction.NORTH, self.branch("|", 9))

    def test_arrows(self):
        state = State.from_string(">v\n^<")
        seen = []
        for _ in range(4):
            state.step()
            seen.append(state.position)
        self.assertEqual([(1, 0), (1, 1), (0, 1), (0, 0)], seen)

    def test_bridge_skips_next_cell(self):
        self.assertEqual("0", output_of("#1.@"))

    def test_string_mode_pushes_spaces(self):
        state = State.from_string('"a b"@')
        self.assertIs(StepStatus.HALTED, run(state))
        self.assertEqual([ord("a"), ord(" "), ord("b")], state.stack)

    def test_halt_stays_halted(self):
        state = State.from_string("@")
        self.assertIs(StepStatus.HALTED, state.step())
        self.assertIs(StepStatus.HALTED, state.step())
        self.assertEqual((0, 0), state.position)
        self.assertEqual(1, state.steps)

    def test_negative_step_wraps(self):
        state = State.from_string("<")
        state.step()
        self.assertEqual((COORD_WRAP - 1, 0), state.position)
        state.direction = Direction.NORTH
        state.position = (4, 0)
        state.step()
        self.assertEqual((4, COORD_WRAP - 1), state.position)


class GridAccessTestCase(unittest.TestCase):
    def test_put_modifies_program(self):
        state = State.from_string('"@"90p')
        self.assertIs(StepStatus.HALTED, run(state))
        self.assertEqual((9, 0), state.position)
        self.assertEqual(ord("@"), state.map.get((9, 0)))
        self.assertEqual(10, state.steps)

    def test_get_reads_cell(self):
        self.assertEqual(str(ord(".")), output_of("30g.@"))

    def test_get_outside_program_reads_space(self):
        self.assertEqual(str(ord(" ")), output_of("99g.@"))

    def test_put_at_negative_coordinate_is_dropped(self):
        state = State.from_string("701-p@")
        self.assertIs(StepStatus.HALTED, run(state))
        self.assertEqual({}, {pos: v for pos, v in state.map.as_dict().items()
                              if pos[1] < 0})

    def test_history_recorded(self):
        state = State.from_string('"A"34p@')
        run(state)
        self.assertIn((0, 0), state.pos_history)
        self.assertIn((3, 4), state.put_history)

    def test_history_can_be_disabled(self):
        settings = Settings(record_position_history=False,
                            record_put_history=False,
                            record_get_history=False)
        state = State.from_string('"A"34p00g@')
        run(state, settings)
        self.assertEqual({}, state.pos_history)
        self.assertEqual({}, state.put_history)
        self.assertEqual({}, state.get_history)

    def test_prune_history(self):
        state = State()
        now = time.monotonic()
        state.pos_history[(1, 1)] = now - 10.0
        state.pos_history[(2, 2)] = now
        state.prune_history(max_age=5.0, now=now)
        self.assertEqual([(2, 2)], list(state.pos_history))


class InputTestCase(unittest.TestCase):
    def test_buffered_input(self):
        state = State.from_string("~.@")
        state.push_input("A")
        self.assertIs(StepStatus.HALTED, run(state))
        self.assertEqual("65", state.output)

    def test_exhausted_input_pauses_on_tilde(self):
        state = State.from_string("~.@")
        self.assertIs(StepStatus.BREAKPOINT, state.step())
        self.assertTrue(state.awaiting_input)
        self.assertIs(ErrorKind.INPUT_EXHAUSTED, state.last_stop)
        self.assertEqual((0, 0), state.position)
        state.push_input("B")
        self.assertFalse(state.awaiting_input)
        self.assertIs(StepStatus.HALTED, run(state))
        self.assertEqual("66", state.output)

    def test_numeric_input_fails_loudly(self):
        state = State.from_string("&@")
        for _ in range(3):
            self.assertIs(StepStatus.ERROR, state.step())
        self.assertIs(ErrorKind.UNIMPLEMENTED, state.error)
        self.assertIn("&", state.error_message)


class InvalidOperationTestCase(unittest.TestCase):
    def test_halt_policy(self):
        state = State.from_string("q5.@")
        self.assertIs(StepStatus.ERROR, state.step())
        self.assertIs(ErrorKind.INVALID_OPERATION, state.error)
        self.assertEqual((0, 0), state.position)
        self.assertIs(StepStatus.ERROR, state.step())

    def test_ignore_policy(self):
        settings = Settings(invalid_operation_behaviour=InvalidOperationBehaviour.IGNORE)
        state = State.from_string("q5.@")
        self.assertIs(StepStatus.NORMAL, state.step(settings))
        self.assertEqual((1, 0), state.position)
        self.assertIs(Direction.EAST, state.direction)
        self.assertIs(StepStatus.HALTED, run(state, settings))
        self.assertEqual("5", state.output)

    def test_reflect_policy(self):
        settings = Settings(invalid_operation_behaviour=InvalidOperationBehaviour.REFLECT)
        state = State.from_string("@1q")
        state.position = (1, 0)
        self.assertIs(StepStatus.NORMAL, state.step(settings))
        self.assertIs(StepStatus.NORMAL, state.step(settings))
        self.assertIs(Direction.WEST, state.direction)
        self.assertEqual((1, 0), state.position)
        self.assertIs(StepStatus.HALTED, run(state, settings))
        self.assertEqual([1, 1], state.stack)
        self.assertIsNone(state.error)

    def test_values_outside_byte_range_are_invalid(self):
        state = State()
        state.map.set((0, 0), 0x263A)
        self.assertIs(StepStatus.ERROR, state.step())

    def test_random_direction_is_not_an_opcode(self):
        state = State.from_string("?")
        self.assertIs(StepStatus.ERROR, state.step())


class BreakpointTestCase(unittest.TestCase):
    def test_breakpoint_once_per_iteration(self):
        state = State.from_string(">v\n^<")
        state.breakpoints.add((1, 0))
        statuses = [state.step() for _ in range(12)]
        expected = [StepStatus.BREAKPOINT] + [StepStatus.NORMAL] * 3
        self.assertEqual(expected * 3, statuses)

    def test_breakpoint_does_not_block_next_step(self):
        state = State.from_string("12@")
        state.breakpoints.add((1, 0))
        self.assertIs(StepStatus.BREAKPOINT, state.step())
        self.assertIs(StepStatus.NORMAL, state.step())
        self.assertIs(StepStatus.HALTED, state.step())


class SkipSpacesTestCase(unittest.TestCase):
    settings = Settings(skip_spaces=True)

    def test_glides_over_spaces(self):
        state = State.from_string(">   5.@")
        self.assertIs(StepStatus.NORMAL, state.step(self.settings))
        self.assertEqual((4, 0), state.position)

    def test_without_skipping(self):
        state = State.from_string(">   5.@")
        state.step()
        self.assertEqual((1, 0), state.position)

    def test_runaway_guard(self):
        state = State()
        state.step(self.settings)
        self.assertEqual((1 + SKIP_SPACES_LIMIT, 0), state.position)

    def test_stops_on_breakpoint(self):
        state = State.from_string(">   5.@")
        state.breakpoints.add((2, 0))
        self.assertIs(StepStatus.BREAKPOINT, state.step(self.settings))
        self.assertEqual((2, 0), state.position)

    def test_no_skipping_in_string_mode(self):
        state = State.from_string('"  a"')
        state.step(self.settings)
        self.assertEqual((1, 0), state.position)
        state.step(self.settings)
        self.assertEqual([ord(" ")], state.stack)


if __name__ == '__main__':
    unittest.main()
