"""HRM Extension: instruction trace.

Prints one line per executed instruction to stderr:

    step 3 @ 2:8 copyto 0   hand=5

and a final summary when the program ends or fails.
"""

from __future__ import annotations

import sys
from typing import Any

from extensions import ExtensionAPI, StepContext


HRM_EXTENSION_NAME = "steptrace"
HRM_EXTENSION_API_VERSION = 1


def _emit(line: str) -> None:
    print(line, file=sys.stderr)


def hrm_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=HRM_EXTENSION_NAME, version="1.0.0")

    @ext.every_n_steps(1, name="trace_step")
    def _trace_step(interpreter: Any, ctx: StepContext) -> None:
        _emit(
            f"step {ctx.step_index} @ {ctx.location.line}:{ctx.location.column} "
            f"{ctx.entry.statement}\thand={interpreter.hand}"
        )

    @ext.on_event("program_end")
    def _summary(interpreter: Any, steps: int) -> None:
        _emit(f"halted after {steps} steps")

    @ext.on_event("on_error")
    def _failed(interpreter: Any, error: Any) -> None:
        _emit(f"failed: {error.kind.value} at {error.location.line}:{error.location.column}")
