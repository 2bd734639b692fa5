"""Extension host for the HRM interpreter.

An extension is a Python file defining ``hrm_register(ext)``. It may also set
``HRM_EXTENSION_NAME`` and ``HRM_EXTENSION_API_VERSION``. ``.hrmx`` pointer
files list extension paths, one per line.
"""

from __future__ import annotations

import hashlib
import importlib.util
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Union

from lexer import HRMError, Instruction, Location, Program

if TYPE_CHECKING:
    from interpreter import Interpreter, InterpreterError, StateEntry


EXTENSION_API_VERSION = 1


@dataclass(frozen=True)
class StepContext:
    """The step a rule fires on, as recorded in the interpreter's step log."""

    entry: "StateEntry"

    @property
    def step_index(self) -> int:
        return self.entry.step_index

    @property
    def rule(self) -> str:
        return self.entry.rule

    @property
    def location(self) -> Location:
        return self.entry.source_location

    @property
    def cursor(self) -> int:
        return self.entry.cursor


ProgramHook = Callable[["Interpreter", Program], None]
InstructionHook = Callable[["Interpreter", Instruction], None]
ErrorHook = Callable[["Interpreter", "InterpreterError"], None]
EndHook = Callable[["Interpreter", int], None]
EventHook = Union[ProgramHook, InstructionHook, ErrorHook, EndHook]
StepRule = Callable[["Interpreter", StepContext], None]

# event -> what the hook receives after the interpreter
EVENTS: Dict[str, str] = {
    "program_start": "program",
    "before_instruction": "instruction",
    "after_instruction": "instruction",
    "on_error": "error",
    "program_end": "step count",
}


class HRMExtensionError(HRMError):
    pass


class HookFailure(HRMExtensionError):
    """An extension hook raised something outside the HRM error hierarchy."""

    def __init__(self, ext_name: str, hook: str, cause: Exception) -> None:
        super().__init__(f"extension '{ext_name}' {hook} failed: {cause}")
        self.ext_name = ext_name
        self.hook = hook
        self.cause = cause


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    path: Optional[str] = None


@dataclass(frozen=True)
class _EventHook:
    priority: int
    handler: EventHook
    ext_name: str


@dataclass(frozen=True)
class _StepRule:
    every_n: int
    handler: StepRule
    ext_name: str
    name: str


def _call_hook(ext_name: str, hook: str, handler: Callable[..., None], *args: Any) -> None:
    try:
        handler(*args)
    except HRMError:
        raise
    except Exception as exc:
        raise HookFailure(ext_name, hook, exc) from exc


@dataclass
class HookRegistry:
    _events: Dict[str, List[_EventHook]] = field(default_factory=dict)
    _step_rules: List[_StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: EventHook, *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise HRMExtensionError(f"Unknown event '{event}'")
        hooks = self._events.setdefault(event, [])
        hooks.append(_EventHook(priority, handler, ext_name))
        # Stable: equal priorities keep registration order.
        hooks.sort(key=lambda hook: hook.priority, reverse=True)

    def emit(self, event: str, interpreter: "Interpreter", payload: Any) -> None:
        for hook in self._events.get(event, []):
            _call_hook(hook.ext_name, f"hook '{event}'", hook.handler, interpreter, payload)

    def add_step_rule(self, *, name: str, every_n: int, handler: StepRule, ext_name: str) -> None:
        if every_n <= 0:
            raise HRMExtensionError(f"every_n_steps must be >= 1 (got {every_n} for '{name}')")
        self._step_rules.append(_StepRule(every_n, handler, ext_name, name))

    def after_step(self, interpreter: "Interpreter", ctx: StepContext) -> None:
        for rule in self._step_rules:
            if ctx.step_index % rule.every_n == 0:
                _call_hook(rule.ext_name, f"step rule '{rule.name}'", rule.handler, interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    """Handle passed to ``hrm_register``; every hook it adds is tagged with the extension's name."""

    def __init__(self, *, services: RuntimeServices, ext_name: str, path: Optional[str] = None) -> None:
        self._services = services
        self._ext_name = ext_name
        self._path = path

    @property
    def name(self) -> str:
        return self._ext_name

    def metadata(self, *, name: str, version: str = "0.0.0") -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, path=self._path))

    def on_event(self, event: str, handler: Optional[EventHook] = None, *, priority: int = 0):
        registry = self._services.hook_registry

        def add(fn: EventHook) -> EventHook:
            registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return add if handler is None else add(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepRule] = None, *, name: str = ""):
        registry = self._services.hook_registry

        def add(fn: StepRule) -> StepRule:
            rule_name = name or getattr(fn, "__name__", "step_rule")
            registry.add_step_rule(name=rule_name, every_n=every_n, handler=fn, ext_name=self._ext_name)
            return fn

        return add if handler is None else add(handler)


def _module_name(path: Path) -> str:
    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:12]
    stem = "".join(ch if ch.isalnum() else "_" for ch in path.stem)
    return f"hrm_ext_{stem}_{digest}"


def load_extension_module(path: Union[str, Path]) -> ModuleType:
    path = Path(path).resolve()
    if not path.is_file():
        raise HRMExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name(path), path)
    if spec is None or spec.loader is None:
        raise HRMExtensionError(f"Cannot import extension: {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise HRMExtensionError(f"Extension {path} failed to import: {exc}") from exc
    return module


def read_hrmx(pointer_file: Union[str, Path]) -> List[str]:
    """Read a pointer file listing one extension path per line.

    Blank lines and ``#`` comments are ignored; relative paths are resolved
    against the pointer file's directory.
    """
    pointer = Path(pointer_file)
    if not pointer.is_file():
        raise HRMExtensionError(f".hrmx file not found: {pointer}")
    base_dir = pointer.absolute().parent
    paths: List[str] = []
    for raw in pointer.read_text(encoding="utf-8").splitlines():
        entry = raw.split("#", 1)[0].strip()
        if entry:
            paths.append(str(base_dir / entry))
    return paths


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for p in paths:
        if p.lower().endswith(".hrmx"):
            expanded.extend(read_hrmx(p))
        else:
            expanded.append(str(Path(p).absolute()))
    return expanded


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def register_module(services: RuntimeServices, module: ModuleType, path: str) -> None:
    """Check a loaded extension module against the host API and call its ``hrm_register``."""
    api_version = getattr(module, "HRM_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if api_version != EXTENSION_API_VERSION:
        raise HRMExtensionError(
            f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "hrm_register", None)
    if not callable(register):
        raise HRMExtensionError(f"Extension {path} must define callable hrm_register(ext)")
    ext_name = str(getattr(module, "HRM_EXTENSION_NAME", Path(path).stem))
    try:
        register(ExtensionAPI(services=services, ext_name=ext_name, path=path))
    except HRMExtensionError:
        raise
    except Exception as exc:
        raise HRMExtensionError(f"Extension '{ext_name}' failed to register: {exc}") from exc


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        register_module(services, load_extension_module(path), path)
    return services
