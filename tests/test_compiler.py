from __future__ import annotations

import pytest

from codemash.core.models import Severity, SourceUnit
from codemash.services.compiler import CompilationFailure, CompiledUnit

from conftest import unit


def test_compiles_single_unit(compiler):
    result = compiler.compile([unit("def main():\n    return 1\n")], namespace="s1")
    assert isinstance(result, CompiledUnit)
    assert result.entry_unit == "solution"
    assert result.unit_names == ("solution",)
    assert result.entry_point("main").signature == "solution.main()"


def test_export_rows_carry_namespaced_filenames(compiler):
    units = [
        unit("import helper\n\ndef main():\n    return helper.X\n", name="entry"),
        unit("X = 3\n", name="helper", entry=False),
    ]
    result = compiler.compile(units, namespace="abc")
    rows = result.export()
    assert [(name, filename) for name, filename, _, _ in rows] == [
        ("entry", "abc/entry.py"),
        ("helper", "abc/helper.py"),
    ]


def test_syntax_error_gives_error_diagnostic(compiler):
    result = compiler.compile([unit("def main(:\n    pass\n")])
    assert isinstance(result, CompilationFailure)
    (err,) = result.errors
    assert err.unit_name == "solution"
    assert err.line == 1
    assert err.severity is Severity.ERROR


def test_every_unit_is_diagnosed(compiler):
    units = [
        unit("def main(:\n", name="entry"),
        unit("x = = 1\n", name="other", entry=False),
    ]
    result = compiler.compile(units)
    assert isinstance(result, CompilationFailure)
    assert {d.unit_name for d in result.errors} == {"entry", "other"}


def test_warnings_alone_do_not_fail(compiler):
    result = compiler.compile([unit("def main():\n    x = 1\n    return x is 1\n")])
    assert isinstance(result, CompiledUnit)
    assert result.warnings
    assert all(d.severity is Severity.WARNING for d in result.warnings)
    assert "SyntaxWarning" in result.warnings[0].message


def test_warnings_come_before_errors(compiler):
    text = 'def f():\n    return "\\d"\n\ndef main(:\n'
    result = compiler.compile([unit(text)])
    assert isinstance(result, CompilationFailure)
    severities = [d.severity for d in result.diagnostics]
    assert Severity.ERROR in severities
    if Severity.WARNING in severities:
        assert severities.index(Severity.WARNING) < severities.index(Severity.ERROR)


@pytest.mark.parametrize("entries", [0, 2])
def test_exactly_one_entry_point(compiler, entries):
    units = [SourceUnit(f"u{i}", "def main():\n    pass\n", is_entry_point=i < entries) for i in range(2)]
    result = compiler.compile(units)
    assert isinstance(result, CompilationFailure)
    assert any("exactly one entry point" in d.message for d in result.errors)


def test_empty_submission(compiler):
    result = compiler.compile([])
    assert isinstance(result, CompilationFailure)
    assert result.errors[0].message == "no source units submitted"


def test_duplicate_names(compiler):
    units = [unit("def main():\n    pass\n", name="a"), unit("X = 1\n", name="a", entry=False)]
    result = compiler.compile(units)
    assert isinstance(result, CompilationFailure)
    assert any("duplicate unit name 'a'" in d.message for d in result.errors)


@pytest.mark.parametrize("name", ["not-valid", "class", "os", "json", "codemash"])
def test_bad_unit_names(compiler, name):
    result = compiler.compile([unit("def main():\n    pass\n", name=name)])
    assert isinstance(result, CompilationFailure)
    assert result.errors[0].unit_name == name


def test_missing_entry_function(compiler):
    result = compiler.compile([unit("def run():\n    pass\n")])
    assert isinstance(result, CompilationFailure)
    assert "does not define main()" in result.errors[0].message


def test_async_entry_function(compiler):
    result = compiler.compile([unit("async def main():\n    pass\n")])
    assert isinstance(result, CompilationFailure)
    assert "must not be async" in result.errors[0].message


def test_custom_entry_point_name():
    from codemash.services.compiler import Compiler

    result = Compiler(entry_point_name="solve").compile([unit("def solve(a, b=2, *rest, **kw):\n    pass\n")])
    assert isinstance(result, CompiledUnit)
    assert result.entry_point("solve").parameters == ("a", "b", "*rest", "**kw")


def test_lookup_prefers_entry_unit(compiler):
    units = [
        unit("import helper\nVALUE = 1\n\ndef main():\n    return VALUE\n", name="entry"),
        unit("VALUE = 2\n\nclass Thing:\n    pass\n", name="helper", entry=False),
    ]
    result = compiler.compile(units)
    assert result.lookup("VALUE").unit_name == "entry"
    assert result.lookup("VALUE", unit="helper").line == 1
    assert result.lookup("Thing").kind == "class"
    assert result.lookup("helper").kind == "import"
    assert result.lookup("nothing") is None


def test_release_invalidates(compiler):
    result = compiler.compile([unit("def main():\n    pass\n")])
    result.release()
    assert result.released
    with pytest.raises(ValueError):
        result.export()
    with pytest.raises(ValueError):
        result.lookup("main")


def test_namespaces_are_independent(compiler):
    a = compiler.compile([unit("def main():\n    return 'a'\n")], namespace="one")
    b = compiler.compile([unit("def main():\n    return 'b'\n")], namespace="two")
    a.release()
    assert not b.released
    assert b.export()[0][1] == "two/solution.py"


def test_engine_package_name_is_reserved(compiler):
    result = compiler.compile([unit("def main():\n    return 7\n", name="codemash")])
    assert isinstance(result, CompilationFailure)
    assert result.errors[0].message == "unit name 'codemash' is reserved"


def test_oversized_unit_is_refused_before_parsing():
    from codemash.services.compiler import Compiler

    big = "def main():\n    return 1\n" + "x = 1\n" * 100
    result = Compiler(max_source_bytes=64).compile([unit(big)])
    assert isinstance(result, CompilationFailure)
    (err,) = result.errors
    assert err.message == f"unit is {len(big)} bytes, limit is 64"


# ---- coalesce ----

def test_coalesce_multi_unit_submission(compiler, submissions):
    from codemash.core.utils import load_units

    result = compiler.compile(load_units(submissions / "multi", "app.py"))
    code = result.coalesce()
    lines = code.splitlines()
    assert lines[0] == "# coalesced from geometry, shapes, app (entry: app)"
    assert lines[1] == "from types import SimpleNamespace"
    assert "import geometry" not in lines
    assert "from geometry import square" not in code
    assert "geometry = SimpleNamespace(UNIT=UNIT, square=square)" in lines
    assert lines.index("# ---- geometry ----") < lines.index("# ---- shapes ----") < lines.index("# ---- app ----")

    single = compiler.compile([unit(code, name="app")])
    assert isinstance(single, CompiledUnit)


def test_coalesce_hoists_and_dedupes_outside_imports(compiler):
    units = [
        unit("import math\nfrom helper import twice as tw\n\ndef main():\n    return tw(math.pi)\n", name="entry"),
        unit("from __future__ import annotations\nimport math\n\ndef twice(x):\n    return 2 * x\n",
             name="helper", entry=False),
    ]
    code = compiler.compile(units).coalesce()
    lines = code.splitlines()
    assert lines[1] == "from __future__ import annotations"
    assert lines.count("import math") == 1
    assert "tw = twice" in lines
    assert isinstance(compiler.compile([unit(code)]), CompiledUnit)


def test_coalesce_refuses_conflicting_names(compiler):
    units = [
        unit("import helper\nVALUE = 1\n\ndef main():\n    return VALUE\n", name="entry"),
        unit("VALUE = 2\n", name="helper", entry=False),
    ]
    with pytest.raises(ValueError, match="'VALUE' is defined in both"):
        compiler.compile(units).coalesce()


def test_coalesce_refuses_circular_imports(compiler):
    units = [
        unit("import a\n\ndef main():\n    pass\n", name="entry"),
        unit("import b\n", name="a", entry=False),
        unit("import a\n", name="b", entry=False),
    ]
    with pytest.raises(ValueError, match="circular import between units: a -> b -> a"):
        compiler.compile(units).coalesce()
