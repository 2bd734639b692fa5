from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union


class HRMError(Exception):
    """Base class for interpreter errors."""


T = TypeVar("T")


@dataclass(frozen=True)
class Location:
    line: int
    column: int

    def __str__(self) -> str:
        return f"line {self.line}, column {self.column}"


@dataclass(frozen=True)
class Located(Generic[T]):
    value: T
    location: Location


class HRMParseError(HRMError):
    """Raised by strict lexing when a chunk cannot be turned into an instruction."""

    def __init__(self, message: str, *, location: Location) -> None:
        super().__init__(f"{message} at {location}")
        self.message = message
        self.location = location


# ---- Instruction kinds ----


@dataclass(frozen=True)
class InBox:
    pass


@dataclass(frozen=True)
class OutBox:
    pass


@dataclass(frozen=True)
class CopyFrom:
    cell: int


@dataclass(frozen=True)
class CopyTo:
    cell: int


@dataclass(frozen=True)
class Add:
    cell: int


@dataclass(frozen=True)
class Sub:
    cell: int


@dataclass(frozen=True)
class BumpPlus:
    cell: int


@dataclass(frozen=True)
class BumpMinus:
    cell: int


@dataclass(frozen=True)
class Jump:
    label: str


@dataclass(frozen=True)
class JumpIfZero:
    label: str


@dataclass(frozen=True)
class JumpIfNeg:
    label: str


@dataclass(frozen=True)
class JumpTarget:
    label: str


InstructionKind = Union[
    InBox,
    OutBox,
    CopyFrom,
    CopyTo,
    Add,
    Sub,
    BumpPlus,
    BumpMinus,
    Jump,
    JumpIfZero,
    JumpIfNeg,
    JumpTarget,
]
Instruction = Located[InstructionKind]
Program = List[Instruction]
Chunk = Located[str]

MEMORY_KINDS = (CopyFrom, CopyTo, Add, Sub, BumpPlus, BumpMinus)
JUMP_KINDS = (Jump, JumpIfZero, JumpIfNeg)


# Cell indices are unsigned machine words; anything wider is malformed.
MAX_CELL_INDEX = 2 ** 64 - 1
_MAX_CELL_DIGITS = len(str(MAX_CELL_INDEX))


def _parse_cell(text: str) -> Optional[int]:
    digits = text[1:] if text.startswith("+") else text
    if digits == "" or any(ch not in "0123456789" for ch in digits):
        return None
    digits = digits.lstrip("0") or "0"
    if len(digits) > _MAX_CELL_DIGITS:
        return None
    value = int(digits)
    return value if value <= MAX_CELL_INDEX else None


def _parse_label(text: str) -> Optional[str]:
    return text


# opcode -> (constructor, argument parser); argument parser is None for
# zero-argument opcodes.
OPCODES: Dict[str, Tuple[Callable[..., InstructionKind], Optional[Callable[[str], object]]]] = {
    "inbox": (InBox, None),
    "outbox": (OutBox, None),
    "copyfrom": (CopyFrom, _parse_cell),
    "copyto": (CopyTo, _parse_cell),
    "add": (Add, _parse_cell),
    "sub": (Sub, _parse_cell),
    "bump_plus": (BumpPlus, _parse_cell),
    "bump_minus": (BumpMinus, _parse_cell),
    "jump": (Jump, _parse_label),
    "jump_if_zero": (JumpIfZero, _parse_label),
    "jump_if_neg": (JumpIfNeg, _parse_label),
    "jump_target": (JumpTarget, _parse_label),
}

OPCODE_NAMES: Dict[type, str] = {ctor: name for name, (ctor, _) in OPCODES.items()}

WHITESPACE = " \t\n\r\x0b\x0c"


def opcode_name(kind: InstructionKind) -> str:
    return OPCODE_NAMES[type(kind)]


def render_instruction(kind: InstructionKind) -> str:
    """Render an instruction kind back into its source form."""
    name = opcode_name(kind)
    if isinstance(kind, MEMORY_KINDS):
        return f"{name} {kind.cell}"
    if isinstance(kind, (JumpTarget,) + JUMP_KINDS):
        return f"{name} {kind.label}"
    return name


class Lexer:
    """Turns program text into an ordered list of located instructions.

    Lenient by default: unknown chunks and opcodes with a missing or malformed
    argument are dropped. Each drop is recorded in ``diagnostics``; with
    ``strict=True`` the first one raises :class:`HRMParseError` instead.
    """

    def __init__(self, text: str, *, strict: bool = False) -> None:
        self.text = text
        self.strict = strict
        self.index = 0
        self.line = 1
        self.column = 1
        self.diagnostics: List[Located[str]] = []

    def chunks(self) -> List[Chunk]:
        chunks: List[Chunk] = []
        chunks_append = chunks.append
        _advance = self._advance
        text = self.text
        n = len(text)

        while self.index < n:
            if text[self.index] in WHITESPACE:
                _advance()
                continue
            location = Location(self.line, self.column)
            start = self.index
            while self.index < n and text[self.index] not in WHITESPACE:
                _advance()
            chunks_append(Located(text[start:self.index], location))
        return chunks

    def tokenize(self) -> Program:
        chunks = self.chunks()
        program: Program = []
        program_append = program.append
        i = 0
        n = len(chunks)

        while i < n:
            chunk = chunks[i]
            entry = OPCODES.get(chunk.value)
            if entry is None:
                self._drop(f"Unknown opcode '{chunk.value}'", chunk.location)
                i += 1
                continue
            ctor, parse_arg = entry
            if parse_arg is None:
                program_append(Located(ctor(), chunk.location))
                i += 1
                continue
            if i + 1 >= n:
                self._drop(f"Missing argument for '{chunk.value}'", chunk.location)
                i += 1
                continue
            arg_chunk = chunks[i + 1]
            arg = parse_arg(arg_chunk.value)
            if arg is None:
                self._drop(
                    f"Invalid argument '{arg_chunk.value}' for '{chunk.value}'",
                    arg_chunk.location,
                )
                # Only the opcode is consumed; the argument chunk is rescanned.
                i += 1
                continue
            # Diagnostics for argument-taking instructions point at the argument.
            program_append(Located(ctor(arg), arg_chunk.location))
            i += 2
        return program

    def _drop(self, message: str, location: Location) -> None:
        if self.strict:
            raise HRMParseError(message, location=location)
        self.diagnostics.append(Located(message, location))

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def lex(text: str, *, strict: bool = False) -> Program:
    return Lexer(text, strict=strict).tokenize()
