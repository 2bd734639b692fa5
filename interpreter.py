from __future__ import annotations
import json
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from extensions import HookFailure, HookRegistry, RuntimeServices, StepContext, build_default_services
from lexer import (
    Add,
    BumpMinus,
    BumpPlus,
    CopyFrom,
    CopyTo,
    HRMError,
    InBox,
    Instruction,
    JUMP_KINDS,
    Jump,
    JumpIfNeg,
    JumpIfZero,
    JumpTarget,
    Located,
    Location,
    OutBox,
    Program,
    Sub,
    lex,
    opcode_name,
    render_instruction,
)


logger = logging.getLogger(__name__)

FLOOR_SIZE = 6
# Step log entries kept for tracebacks; older steps are only counted.
STEP_HISTORY = 64

# Machine word: signed 16-bit, two's-complement wrap-around on overflow.
WORD_DTYPE = np.int16
_WORD_UNSIGNED = np.uint16
_WORD_MASK = int(np.iinfo(_WORD_UNSIGNED).max)

DIGITS = "0123456789"


def to_word(value: int) -> int:
    """Wrap an arbitrary integer into the machine word."""
    return int(_WORD_UNSIGNED(value & _WORD_MASK).astype(WORD_DTYPE))


def parse_inbox(text: str) -> List[int]:
    """Extract the inbox queue from input text.

    Every maximal run of ASCII digits is one value, in left-to-right order.
    A run directly preceded by ``-`` is negative. Everything else separates.
    Runs are reduced to the word width while scanning, so any length is
    accepted and wraps like machine arithmetic does.
    """
    values: List[int] = []
    i = 0
    n = len(text)
    while i < n:
        if text[i] not in DIGITS:
            i += 1
            continue
        start = i
        number = 0
        while i < n and text[i] in DIGITS:
            number = (number * 10 + DIGITS.index(text[i])) & _WORD_MASK
            i += 1
        if start > 0 and text[start - 1] == "-":
            number = -number & _WORD_MASK
        values.append(number)
    if not values:
        return []
    return np.asarray(values, dtype=_WORD_UNSIGNED).astype(WORD_DTYPE).tolist()


class ErrorKind(Enum):
    UNEXISTED_JUMP_TARGET = "UnexistedJumpTarget"
    UNDEFINED_INPUT_BOX = "UndefinedInputBox"
    EMPTY_IN_BOX = "EmptyInBox"
    EMPTY_FLOOR_VALUE = "EmptyFloorValue"
    EMPTY_HAND_VALUE = "EmptyHandValue"
    CELL_INDEX_OUT_OF_RANGE = "CellIndexOutOfRange"
    EXTENSION_FAILURE = "ExtensionFailure"


class InterpreterError(HRMError):
    """Raised for load-time and execution-time faults."""

    def __init__(
        self,
        kind: ErrorKind,
        location: Location,
        message: str,
    ) -> None:
        super().__init__(f"{kind.value}: {message} ({location})")
        self.kind = kind
        self.location = location
        self.message = message
        self.step_index: Optional[int] = None

    @property
    def located(self) -> Located[ErrorKind]:
        return Located(self.kind, self.location)


@dataclass
class StateEntry:
    step_index: int
    rule: str
    cursor: int
    source_location: Location
    statement: str
    snapshot: Optional[Dict[str, Any]]


class StateLogger:
    """Counts executed steps and keeps the most recent ``history`` entries."""

    def __init__(self, verbose: bool, history: int = STEP_HISTORY) -> None:
        self.verbose = verbose
        self.step_count = 0
        self.entries: Deque[StateEntry] = deque(maxlen=history)

    def record(
        self,
        *,
        instruction: Instruction,
        cursor: int,
        snapshot: Optional[Dict[str, Any]] = None,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=self.step_count,
            rule=opcode_name(instruction.value),
            cursor=cursor,
            source_location=instruction.location,
            statement=render_instruction(instruction.value),
            snapshot=snapshot,
        )
        self.entries.append(entry)
        self.step_count += 1
        return entry

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class Interpreter:
    def __init__(
        self,
        *,
        verbose: bool = False,
        floor_size: int = FLOOR_SIZE,
        services: Optional[RuntimeServices] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        history: int = STEP_HISTORY,
    ) -> None:
        if floor_size <= 0:
            raise ValueError("floor_size must be positive")
        if history <= 0:
            raise ValueError("history must be positive")
        self.history = history
        self.verbose = verbose
        self.floor_size = floor_size
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.output_sink = output_sink or (lambda text: print(text))
        self._dispatch: Dict[type, Callable[[Instruction], None]] = {
            InBox: self._exec_inbox,
            OutBox: self._exec_outbox,
            CopyFrom: self._exec_copy_from,
            CopyTo: self._exec_copy_to,
            Add: self._exec_add,
            Sub: self._exec_sub,
            BumpPlus: self._exec_bump_plus,
            BumpMinus: self._exec_bump_minus,
            Jump: self._exec_jump,
            JumpIfZero: self._exec_jump_if_zero,
            JumpIfNeg: self._exec_jump_if_neg,
            JumpTarget: self._exec_jump_target,
        }
        self._reset([])

    def _reset(self, program: Program) -> None:
        self.program: Program = list(program)
        self.hand: Optional[int] = None
        self.cells: List[Optional[int]] = []
        self.inbox: Optional[Deque[int]] = None
        self.jump_table: Dict[int, int] = {}
        self.cursor = 0
        self.logger = StateLogger(verbose=self.verbose, history=self.history)

    def set_inbox(self, text: Optional[str]) -> None:
        self.inbox = None if text is None else deque(parse_inbox(text))

    def load(self, program: Program) -> None:
        """Allocate the floor and resolve every jump to its target position."""
        self.cells = [None] * self.floor_size
        targets: Dict[str, int] = {}
        for index, instruction in enumerate(program):
            kind = instruction.value
            if isinstance(kind, JumpTarget):
                if kind.label in targets:
                    logger.debug(
                        "Duplicate jump_target '%s' at %s overrides position %d",
                        kind.label,
                        instruction.location,
                        targets[kind.label],
                    )
                targets[kind.label] = index

        jump_table: Dict[int, int] = {}
        for index, instruction in enumerate(program):
            kind = instruction.value
            if isinstance(kind, JUMP_KINDS):
                if kind.label not in targets:
                    raise InterpreterError(
                        ErrorKind.UNEXISTED_JUMP_TARGET,
                        instruction.location,
                        f"no jump_target for label '{kind.label}'",
                    )
                jump_table[index] = targets[kind.label]
        self.jump_table = jump_table
        logger.debug("Loaded %d instructions, %d jumps resolved", len(program), len(jump_table))

    def run(self, program: Program, input_text: Optional[str] = None) -> None:
        self._reset(program)
        self.set_inbox(input_text)
        try:
            self.load(self.program)
            self._emit_event("program_start", self.program)
            self._execute()
        except InterpreterError as error:
            last = self.logger.last
            if last is not None and error.step_index is None:
                error.step_index = last.step_index
            if error.kind is not ErrorKind.EMPTY_IN_BOX:
                self._emit_event("on_error", error)
                raise
            # An exhausted inbox is the normal end of a batch.
            logger.debug("EmptyInBox at %s; halting", error.location)
        logger.debug("Run finished after %d steps", self.logger.step_count)
        self._emit_event("program_end", self.logger.step_count)

    def _execute(self) -> None:
        program = self.program
        n = len(program)
        dispatch = self._dispatch
        emit_event = self._emit_event
        log_step = self._log_step
        while self.cursor < n:
            instruction = program[self.cursor]
            log_step(instruction)
            emit_event("before_instruction", instruction)
            dispatch[type(instruction.value)](instruction)
            emit_event("after_instruction", instruction)

    # ---- machine access ----

    def _check_cell(self, instruction: Instruction, cell: int) -> None:
        if cell >= self.floor_size:
            raise InterpreterError(
                ErrorKind.CELL_INDEX_OUT_OF_RANGE,
                instruction.location,
                f"cell {cell} is outside the floor (0..{self.floor_size - 1})",
            )

    def _read_cell(self, instruction: Instruction, cell: int) -> int:
        self._check_cell(instruction, cell)
        value = self.cells[cell]
        if value is None:
            raise InterpreterError(
                ErrorKind.EMPTY_FLOOR_VALUE,
                instruction.location,
                f"cell {cell} is empty",
            )
        return value

    def _read_hand(self, instruction: Instruction) -> int:
        if self.hand is None:
            raise InterpreterError(
                ErrorKind.EMPTY_HAND_VALUE,
                instruction.location,
                f"{opcode_name(instruction.value)} with an empty hand",
            )
        return self.hand

    def _jump_target(self, instruction: Instruction) -> int:
        target = self.jump_table.get(self.cursor)
        if target is None:
            raise InterpreterError(
                ErrorKind.UNEXISTED_JUMP_TARGET,
                instruction.location,
                f"unresolved jump to '{instruction.value.label}'",
            )
        return target

    # ---- opcodes ----

    def _exec_inbox(self, instruction: Instruction) -> None:
        if self.inbox is None:
            raise InterpreterError(
                ErrorKind.UNDEFINED_INPUT_BOX,
                instruction.location,
                "inbox executed with no input configured",
            )
        if not self.inbox:
            raise InterpreterError(
                ErrorKind.EMPTY_IN_BOX,
                instruction.location,
                "inbox is exhausted",
            )
        self.hand = self.inbox.popleft()
        self.cursor += 1

    def _exec_outbox(self, instruction: Instruction) -> None:
        value = self._read_hand(instruction)
        self.output_sink(str(value))
        self.hand = None
        self.cursor += 1

    def _exec_copy_from(self, instruction: Instruction) -> None:
        self.hand = self._read_cell(instruction, instruction.value.cell)
        self.cursor += 1

    def _exec_copy_to(self, instruction: Instruction) -> None:
        cell = instruction.value.cell
        self._check_cell(instruction, cell)
        self.cells[cell] = self._read_hand(instruction)
        self.cursor += 1

    def _exec_add(self, instruction: Instruction) -> None:
        operand = self._read_cell(instruction, instruction.value.cell)
        self.hand = to_word(self._read_hand(instruction) + operand)
        self.cursor += 1

    def _exec_sub(self, instruction: Instruction) -> None:
        operand = self._read_cell(instruction, instruction.value.cell)
        self.hand = to_word(self._read_hand(instruction) - operand)
        self.cursor += 1

    def _bump(self, instruction: Instruction, delta: int) -> None:
        cell = instruction.value.cell
        value = to_word(self._read_cell(instruction, cell) + delta)
        self.cells[cell] = value
        self.hand = value
        self.cursor += 1

    def _exec_bump_plus(self, instruction: Instruction) -> None:
        self._bump(instruction, 1)

    def _exec_bump_minus(self, instruction: Instruction) -> None:
        self._bump(instruction, -1)

    def _exec_jump(self, instruction: Instruction) -> None:
        self.cursor = self._jump_target(instruction)

    def _exec_jump_if_zero(self, instruction: Instruction) -> None:
        if self.hand == 0:
            self.cursor = self._jump_target(instruction)
        else:
            self.cursor += 1

    def _exec_jump_if_neg(self, instruction: Instruction) -> None:
        if self.hand is not None and self.hand < 0:
            self.cursor = self._jump_target(instruction)
        else:
            self.cursor += 1

    def _exec_jump_target(self, instruction: Instruction) -> None:
        self.cursor += 1

    # ---- observability ----

    def snapshot(self) -> Dict[str, Any]:
        return {
            "hand": self.hand,
            "cells": list(self.cells),
            "inbox": None if self.inbox is None else len(self.inbox),
            "cursor": self.cursor,
        }

    def _emit_event(self, event: str, payload: Any) -> None:
        try:
            self.hook_registry.emit(event, self, payload)
        except HookFailure as failure:
            raise InterpreterError(ErrorKind.EXTENSION_FAILURE, self._current_location(), str(failure)) from failure.cause

    def _current_location(self) -> Location:
        """Location of the step in progress, or of the first instruction before any step runs."""
        last = self.logger.last
        if last is not None:
            return last.source_location
        if self.program:
            return self.program[0].location
        return Location(1, 1)

    def _log_step(self, instruction: Instruction) -> StateEntry:
        snapshot = self.snapshot() if self.verbose else None
        entry = self.logger.record(instruction=instruction, cursor=self.cursor, snapshot=snapshot)
        if self.verbose:
            logger.debug("step:%d\tcommand:%s\tat %s", entry.step_index, entry.statement, instruction.location)

        # Step rules see the entry that was just recorded.
        try:
            self.hook_registry.after_step(self, StepContext(entry))
        except HookFailure as failure:
            raise InterpreterError(ErrorKind.EXTENSION_FAILURE, instruction.location, str(failure)) from failure.cause
        return entry


def run_source(
    source: str,
    input_text: Optional[str] = None,
    *,
    strict: bool = False,
    **options: Any,
) -> Interpreter:
    """Lex and run ``source``; returns the interpreter for inspection."""
    interpreter = Interpreter(**options)
    interpreter.run(lex(source, strict=strict), input_text)
    return interpreter


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter, source: Optional[str] = None, *, depth: int = 5) -> None:
        self.interpreter = interpreter
        self.source_lines = source.splitlines() if source is not None else []
        self.depth = depth

    def recent_steps(self) -> List[StateEntry]:
        if self.depth <= 0:
            return []
        return list(self.interpreter.logger.entries)[-self.depth:]

    def _source_line(self, location: Location) -> Optional[str]:
        if 0 < location.line <= len(self.source_lines):
            return self.source_lines[location.line - 1].strip()
        return None

    def format_text(self, error: InterpreterError, verbose: bool) -> str:
        lines = ["Traceback (most recent step last):"]
        steps = self.recent_steps()
        if not steps:
            lines.append("  <before first step>")
        for entry in steps:
            loc = entry.source_location
            lines.append(f"  Step {entry.step_index}, line {loc.line}, column {loc.column}: {entry.statement}")
            if verbose and entry.snapshot is not None:
                snapshot = ", ".join(f"{k}={v}" for k, v in entry.snapshot.items())
                lines.append(f"    Machine: {snapshot}")
        source_line = self._source_line(error.location)
        if source_line:
            lines.append(f"    {source_line}")
        lines.append(f"{error.kind.value}: {error.message} ({error.location})")
        return "\n".join(lines)

    def to_json(self, error: InterpreterError) -> str:
        steps_json: List[Dict[str, Any]] = []
        for entry in self.recent_steps():
            item: Dict[str, Any] = {
                "step_index": entry.step_index,
                "rule": entry.rule,
                "cursor": entry.cursor,
                "source_location": {
                    "line": entry.source_location.line,
                    "column": entry.source_location.column,
                    "statement": entry.statement,
                },
            }
            if entry.snapshot is not None:
                item["snapshot"] = entry.snapshot
            steps_json.append(item)
        data = {
            "error": {
                "type": error.kind.value,
                "message": error.message,
                "location": {"line": error.location.line, "column": error.location.column},
                "failing_step_index": error.step_index,
            },
            "traceback": steps_json,
        }
        return json.dumps(data, indent=2)
