"""
In-memory compiler: turns SourceUnits into code objects, one isolated unit
table per call. Nothing is written to disk.
"""
from __future__ import annotations

import ast
import keyword
import sys
import threading
import uuid
import warnings
from collections import Counter
from dataclasses import dataclass
from types import CodeType
from typing import Dict, List, Optional, Sequence, Tuple, Union

import structlog

from ..core.errors import CompilerUnavailable
from ..core.models import Diagnostic, Severity, SourceUnit

log = structlog.get_logger(__name__)

# catch_warnings swaps process-wide state
_WARNINGS_LOCK = threading.Lock()

# the child interpreter imports this package before any unit
_ENGINE_PACKAGE = __name__.split(".")[0]


@dataclass(frozen=True)
class Symbol:
    unit_name: str
    name: str
    kind: str          # function | class | variable | import
    line: int


@dataclass(frozen=True)
class EntryPoint:
    unit_name: str
    function_name: str
    parameters: Tuple[str, ...]

    @property
    def signature(self) -> str:
        return f"{self.unit_name}.{self.function_name}({', '.join(self.parameters)})"


@dataclass(frozen=True)
class CompilationFailure:
    diagnostics: Tuple[Diagnostic, ...]

    @property
    def errors(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.is_error)


@dataclass
class _Compiled:
    unit: SourceUnit
    filename: str
    code: CodeType
    tree: ast.Module


class CompiledUnit:
    """
    Code objects of one compilation pass, scoped by *namespace*.
    Owned by exactly one session; ``release()`` drops everything.
    """

    def __init__(self, namespace: str, units: List[_Compiled], entry_unit: str,
                 warnings_: Tuple[Diagnostic, ...]):
        self.namespace = namespace
        self.entry_unit = entry_unit
        self.warnings = warnings_
        self._units: Optional[Dict[str, _Compiled]] = {c.unit.name: c for c in units}
        self._symbols: Optional[Dict[str, Dict[str, Symbol]]] = {
            c.unit.name: _collect_symbols(c.unit.name, c.tree) for c in units
        }

    @property
    def released(self) -> bool:
        return self._units is None

    @property
    def unit_names(self) -> Tuple[str, ...]:
        return tuple(self._live_units())

    def _live_units(self) -> Dict[str, _Compiled]:
        if self._units is None:
            raise ValueError(f"compiled unit {self.namespace} has been released")
        return self._units

    def lookup(self, symbol: str, unit: Optional[str] = None) -> Optional[Symbol]:
        self._live_units()
        tables = self._symbols or {}
        if unit is not None:
            return tables.get(unit, {}).get(symbol)
        # the entry unit wins over siblings when a name is defined twice
        for name in [self.entry_unit] + [n for n in tables if n != self.entry_unit]:
            found = tables[name].get(symbol)
            if found is not None:
                return found
        return None

    def entry_point(self, function_name: str) -> EntryPoint:
        compiled = self._live_units()[self.entry_unit]
        for node in compiled.tree.body:
            if isinstance(node, ast.FunctionDef) and node.name == function_name:
                return EntryPoint(self.entry_unit, function_name, _parameters(node.args))
        raise LookupError(f"{self.entry_unit} has no function {function_name}()")

    def export(self) -> List[Tuple[str, str, CodeType, str]]:
        """(name, filename, code, text) rows, in submission order."""
        return [(c.unit.name, c.filename, c.code, c.unit.text) for c in self._live_units().values()]

    def coalesce(self) -> str:
        """
        Merge the units into one single-file module.

        Imports of outside modules are hoisted to the top, each unit is
        inlined after the siblings it imports, and ``import sibling`` is
        served by a ``SimpleNamespace`` of that sibling's top-level names.
        Raises ValueError for circular unit imports or when two units
        define the same top-level name.
        """
        units = self._live_units()
        symbols = self._symbols or {}
        order = _import_order(units, self.entry_unit)

        owners: Dict[str, str] = {}
        for name in order:
            for sym in symbols[name].values():
                if sym.kind == "import":
                    continue
                owner = owners.setdefault(sym.name, name)
                if owner != name:
                    raise ValueError(f"'{sym.name}' is defined in both {owner} and {name}")

        future: List[str] = []
        hoisted: List[str] = []
        namespaced = set()
        bodies: Dict[str, List[ast.stmt]] = {}
        for name in order:
            body: List[ast.stmt] = []
            for node in units[name].tree.body:
                if not isinstance(node, (ast.Import, ast.ImportFrom)):
                    body.append(node)
                    continue
                outside, aliases, modules = _split_import(node, units)
                namespaced.update(modules)
                body.extend(aliases)
                if outside is not None:
                    line = ast.unparse(outside)
                    target = future if getattr(outside, "module", None) == "__future__" else hoisted
                    if line not in target:
                        target.append(line)
            bodies[name] = body

        if namespaced and "from types import SimpleNamespace" not in hoisted:
            hoisted.insert(0, "from types import SimpleNamespace")
        chunks = [f"# coalesced from {', '.join(order)} (entry: {self.entry_unit})", *future, *hoisted]
        for name in order:
            chunks.append(f"\n# ---- {name} ----")
            chunks.append(ast.unparse(ast.Module(body=bodies[name], type_ignores=[])))
            if name in namespaced:
                fields = ", ".join(f"{s}={s}" for s in symbols[name])
                chunks.append(f"{name} = SimpleNamespace({fields})")
        return "\n".join(chunks) + "\n"

    def release(self) -> None:
        self._units = None
        self._symbols = None


def _parameters(args: ast.arguments) -> Tuple[str, ...]:
    names = [a.arg for a in args.posonlyargs + args.args]
    if args.vararg:
        names.append("*" + args.vararg.arg)
    names += [a.arg for a in args.kwonlyargs]
    if args.kwarg:
        names.append("**" + args.kwarg.arg)
    return tuple(names)


def _collect_symbols(unit_name: str, tree: ast.Module) -> Dict[str, Symbol]:
    table: Dict[str, Symbol] = {}

    def add(name: str, kind: str, line: int) -> None:
        table[name] = Symbol(unit_name, name, kind, line)

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            add(node.name, "function", node.lineno)
        elif isinstance(node, ast.ClassDef):
            add(node.name, "class", node.lineno)
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                for n in ast.walk(target):
                    if isinstance(n, ast.Name):
                        add(n.id, "variable", node.lineno)
        elif isinstance(node, (ast.AnnAssign, ast.AugAssign)) and isinstance(node.target, ast.Name):
            add(node.target.id, "variable", node.lineno)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                if alias.name == "*":
                    continue
                add(alias.asname or alias.name.split(".")[0], "import", node.lineno)
    return table


def _sibling_imports(tree: ast.Module, units: Dict[str, _Compiled]) -> List[str]:
    found: List[str] = []
    for node in tree.body:
        if isinstance(node, ast.Import):
            names = [a.name for a in node.names]
        elif isinstance(node, ast.ImportFrom) and node.level == 0:
            names = [node.module]
        else:
            continue
        found += [n for n in names if n in units and n not in found]
    return found


def _import_order(units: Dict[str, _Compiled], entry_unit: str) -> List[str]:
    """Units with their sibling imports first; the entry unit as late as possible."""
    deps = {name: _sibling_imports(c.tree, units) for name, c in units.items()}
    order: List[str] = []
    active: List[str] = []

    def visit(name: str) -> None:
        if name in order:
            return
        if name in active:
            cycle = active[active.index(name):] + [name]
            raise ValueError(f"circular import between units: {' -> '.join(cycle)}")
        active.append(name)
        for dep in deps[name]:
            visit(dep)
        active.pop()
        order.append(name)

    for name in units:
        if name != entry_unit:
            visit(name)
    visit(entry_unit)
    return order


def _split_import(node: Union[ast.Import, ast.ImportFrom], units: Dict[str, _Compiled]):
    """
    (outside import or None, alias assignments, siblings imported as modules)
    for one top-level import statement.
    """
    def assign(target: str, source: str) -> ast.stmt:
        return ast.parse(f"{target} = {source}").body[0]

    aliases: List[ast.stmt] = []
    if isinstance(node, ast.ImportFrom):
        if node.level != 0 or node.module not in units:
            return node, aliases, []
        for a in node.names:
            if a.asname and a.asname != a.name:
                aliases.append(assign(a.asname, a.name))
        return None, aliases, []

    outside = [a for a in node.names if a.name not in units]
    modules = []
    for a in node.names:
        if a.name in units:
            modules.append(a.name)
            if a.asname and a.asname != a.name:
                aliases.append(assign(a.asname, a.name))
    return (ast.Import(names=outside) if outside else None), aliases, modules


class Compiler:
    def __init__(self, entry_point_name: str = "main", optimize: int = -1,
                 max_source_bytes: Optional[int] = None):
        self.entry_point_name = entry_point_name
        self.optimize = optimize
        self.max_source_bytes = max_source_bytes

    def compile(self, units: Sequence[SourceUnit],
                namespace: Optional[str] = None) -> Union[CompiledUnit, CompilationFailure]:
        namespace = namespace or uuid.uuid4().hex[:12]
        diagnostics: List[Diagnostic] = list(self._check_structure(units))

        compiled: List[_Compiled] = []
        for unit in units:
            if self._oversized(unit):
                continue
            result, found = self._compile_unit(unit, namespace)
            diagnostics.extend(found)
            if result is not None:
                compiled.append(result)

        entry = next((c for c in compiled if c.unit.is_entry_point), None)
        if entry is not None:
            diagnostics.extend(self._check_entry(entry))

        if any(d.is_error for d in diagnostics):
            log.info("compile_failed", namespace=namespace,
                     errors=sum(1 for d in diagnostics if d.is_error))
            return CompilationFailure(tuple(diagnostics))

        assert entry is not None
        return CompiledUnit(
            namespace=namespace,
            units=compiled,
            entry_unit=entry.unit.name,
            warnings_=tuple(diagnostics),
        )

    # ---- checks ----

    def _check_structure(self, units: Sequence[SourceUnit]):
        if not units:
            yield _error("", 0, 0, "no source units submitted")
            return
        entries = [u.name for u in units if u.is_entry_point]
        if len(entries) != 1:
            yield _error("", 0, 0, f"exactly one entry point unit required, got {len(entries)}")
        counts = Counter(u.name for u in units)
        for name, n in counts.items():
            if n > 1:
                yield _error(name, 0, 0, f"duplicate unit name '{name}' ({n} units)")
        for name in counts:
            if not name.isidentifier() or keyword.iskeyword(name):
                yield _error(name, 0, 0, f"'{name}' is not a valid unit name")
            elif name in sys.stdlib_module_names or name in sys.builtin_module_names:
                yield _error(name, 0, 0, f"unit name '{name}' shadows a standard library module")
            elif name == _ENGINE_PACKAGE:
                yield _error(name, 0, 0, f"unit name '{name}' is reserved")
        for u in units:
            if self._oversized(u):
                yield _error(u.name, 0, 0,
                             f"unit is {len(u.text.encode('utf-8'))} bytes, limit is {self.max_source_bytes}")

    def _oversized(self, unit: SourceUnit) -> bool:
        # checked before parsing: a compile in progress cannot be interrupted
        return self.max_source_bytes is not None and len(unit.text.encode("utf-8")) > self.max_source_bytes

    def _compile_unit(self, unit: SourceUnit, namespace: str):
        filename = f"{namespace}/{unit.name}.py"
        found: List[Diagnostic] = []
        with _WARNINGS_LOCK, warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                tree = ast.parse(unit.text, filename=filename)
                code = compile(tree, filename, "exec", dont_inherit=True, optimize=self.optimize)
            except SyntaxError as e:
                found.append(_error(unit.name, e.lineno or 0, e.offset or 0, e.msg))
                tree = code = None
            except ValueError as e:
                found.append(_error(unit.name, 0, 0, str(e)))
                tree = code = None
            except (MemoryError, RecursionError) as e:
                log.error("compiler_unavailable", namespace=namespace, unit=unit.name, error=repr(e))
                raise CompilerUnavailable(f"{type(e).__name__} while compiling {unit.name}") from e
        # warnings first: they are emitted before the parser gives up
        warned = [
            Diagnostic(unit.name, w.lineno or 0, 0, Severity.WARNING, f"{w.category.__name__}: {w.message}")
            for w in caught
            if w.filename == filename
        ]
        if code is None:
            return None, warned + found
        return _Compiled(unit, filename, code, tree), warned

    def _check_entry(self, entry: _Compiled):
        for node in entry.tree.body:
            if getattr(node, "name", None) != self.entry_point_name:
                continue
            if isinstance(node, ast.FunctionDef):
                return []
            if isinstance(node, ast.AsyncFunctionDef):
                return [_error(entry.unit.name, node.lineno, node.col_offset,
                               f"entry point {self.entry_point_name}() must not be async")]
        return [_error(entry.unit.name, 1, 0,
                       f"entry unit '{entry.unit.name}' does not define {self.entry_point_name}()")]


def _error(unit_name: str, line: int, column: int, message: str) -> Diagnostic:
    return Diagnostic(unit_name, line, column, Severity.ERROR, message)
