# =============================================================================
# test_resolver.py - Module Resolver Tests
# =============================================================================
# Tests for import resolution and module ordering.
#
# Test coverage includes:
#   - Module names and import paths relative to the source root
#   - Loading imported files the batch does not name
#   - Unresolved imports reported on the importing module
#   - Cycle detection with the full chain of participants
#   - Topological levels and the analysis frontier
# =============================================================================

from pathlib import Path

import pytest

from crusty.transpiler.errors import ErrorKind, Phase
from crusty.transpiler.resolver import (
    ModuleResolver, find_cycle, load_unit, topological_levels,
)


# =============================================================================
# Helper Functions
# =============================================================================

def write(root: Path, relative: str, text: str) -> Path:
    """Write a source file beneath root, creating directories."""
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def resolve(root: Path, *names: str):
    """Resolve the named entry modules of a project rooted at root."""
    resolver = ModuleResolver(root)
    entries = [load_unit(name, root.joinpath(*name.split(".")).with_suffix(".crst")) for name in names]
    return resolver.resolve(entries)


MATH = "int square(int x) { return x * x; }\n"
MAIN = "#import crate.utils.math\nint main() { return square(3); }\n"


# =============================================================================
# Names and Paths
# =============================================================================

class TestNamesAndPaths:
    """Dotted names map onto files beneath the source root."""

    def test_module_name_for_nested_file(self, tmp_path):
        """Directories become dotted segments."""
        resolver = ModuleResolver(tmp_path)
        assert resolver.module_name_for(tmp_path / "utils" / "math.crst") == "utils.math"

    def test_module_name_outside_root(self, tmp_path):
        """A file outside the root is named by its stem."""
        resolver = ModuleResolver(tmp_path / "src")
        assert resolver.module_name_for(tmp_path / "other" / "tool.crst") == "tool"

    def test_path_for_import_with_crate(self, tmp_path):
        """The leading crate segment is dropped."""
        resolver = ModuleResolver(tmp_path)
        assert resolver.path_for_import("crate.a.b") == tmp_path / "a" / "b.crst"

    def test_path_for_import_without_crate(self, tmp_path):
        """crate is optional."""
        resolver = ModuleResolver(tmp_path)
        assert resolver.path_for_import(["helpers"]) == tmp_path / "helpers.crst"

    def test_custom_extension(self, tmp_path):
        """The source extension is configurable."""
        resolver = ModuleResolver(tmp_path, extension=".cr")
        assert resolver.path_for_import("crate.io") == tmp_path / "io.cr"


# =============================================================================
# Loading Units
# =============================================================================

class TestLoadUnit:
    """Reading and parsing one file into a CompilationUnit."""

    def test_load_parses_tree(self, tmp_path):
        """A valid file yields a tree and no diagnostics."""
        unit = load_unit("math", write(tmp_path, "math.crst", MATH))
        assert unit.ok
        assert unit.tree.items[0].name == "square"
        assert unit.source_lines[0] == MATH.split("\n")[0]

    def test_missing_file_is_io_fault(self, tmp_path):
        """An unreadable file is recorded, not raised."""
        unit = load_unit("ghost", tmp_path / "ghost.crst")
        assert not unit.ok
        assert unit.tree is None
        assert unit.diagnostics[0].phase == Phase.IO
        assert "ghost.crst" in unit.diagnostics[0].message

    def test_parse_fault_is_recorded(self, tmp_path):
        """A syntax error leaves the tree unset."""
        unit = load_unit("bad", write(tmp_path, "bad.crst", "int f( { }"))
        assert unit.tree is None
        assert len(unit.diagnostics) == 1
        assert unit.diagnostics[0].phase == Phase.PARSE

    def test_crlf_source_is_normalized(self, tmp_path):
        """Windows line endings do not leak into source lines."""
        path = tmp_path / "win.crst"
        path.write_bytes(b"int f() {\r\n    return 1;\r\n}\r\n")
        unit = load_unit("win", path)
        assert unit.ok
        assert unit.source_lines[1] == "    return 1;"

    def test_uses_in_source_order(self, tmp_path):
        """uses() lists the #import items."""
        source = "#import crate.b\n#import crate.a\nint f() { return 1; }\n"
        unit = load_unit("m", write(tmp_path, "m.crst", source))
        assert [use.dotted for use in unit.uses()] == ["crate.b", "crate.a"]


# =============================================================================
# Resolution
# =============================================================================

class TestResolve:
    """Building the import graph of a batch."""

    def test_imported_module_is_loaded(self, tmp_path):
        """An import outside the entry set is read from disk."""
        write(tmp_path, "utils/math.crst", MATH)
        write(tmp_path, "main.crst", MAIN)
        result = resolve(tmp_path, "main")
        assert result.ok
        assert set(result.units) == {"main", "utils.math"}
        assert result.units["main"].module.imports == ["utils.math"]

    def test_order_puts_imports_first(self, tmp_path):
        """Every module comes after everything it imports."""
        write(tmp_path, "utils/math.crst", MATH)
        write(tmp_path, "main.crst", MAIN)
        result = resolve(tmp_path, "main")
        assert result.order == ["utils.math", "main"]
        assert result.levels == [["utils.math"], ["main"]]

    def test_independent_modules_share_a_level(self, tmp_path):
        """Modules with no mutual imports may run together."""
        write(tmp_path, "a.crst", "int a() { return 1; }\n")
        write(tmp_path, "b.crst", "int b() { return 2; }\n")
        write(tmp_path, "main.crst", "#import crate.a\n#import crate.b\nint main() { return a() + b(); }\n")
        result = resolve(tmp_path, "main", "a", "b")
        assert result.levels == [["a", "b"], ["main"]]
        assert result.frontier_width == 2

    def test_unresolved_import(self, tmp_path):
        """An import naming no file is reported on the importer."""
        write(tmp_path, "main.crst", "#import crate.nowhere\nint main() { return 0; }\n")
        result = resolve(tmp_path, "main")
        assert not result.ok
        assert len(result.diagnostics) == 1
        diagnostic = result.diagnostics[0]
        assert diagnostic.kind == ErrorKind.UNRESOLVED_IMPORT
        assert diagnostic.message == "unresolved import `crate.nowhere`"
        assert "nowhere.crst" in diagnostic.hint
        assert diagnostic.source_line == "#import crate.nowhere"
        assert result.units["main"].diagnostics == [diagnostic]
        assert result.order == ["main"]

    def test_two_module_cycle(self, tmp_path):
        """A imports B, B imports A: both are named and nothing is ordered."""
        write(tmp_path, "a.crst", "#import crate.b\nint fa() { return 1; }\n")
        write(tmp_path, "b.crst", "#import crate.a\nint fb() { return 2; }\n")
        result = resolve(tmp_path, "a")
        assert result.cycle == ["a", "b"]
        assert result.order == []
        assert result.levels == []
        assert len(result.diagnostics) == 1
        assert result.diagnostics[0].kind == ErrorKind.IMPORT_CYCLE
        assert result.diagnostics[0].message == "import cycle detected: a -> b -> a"

    def test_cycle_span_points_at_import(self, tmp_path):
        """The cycle is reported at the import that closes it."""
        write(tmp_path, "a.crst", "int fa() { return 1; }\n#import crate.b\n")
        write(tmp_path, "b.crst", "#import crate.a\n")
        result = resolve(tmp_path, "a", "b")
        assert result.diagnostics[0].span.start.line == 2

    def test_self_import_is_a_cycle(self, tmp_path):
        """A module importing itself is a cycle of one."""
        write(tmp_path, "loop.crst", "#import crate.loop\n")
        result = resolve(tmp_path, "loop")
        assert result.cycle == ["loop"]
        assert result.diagnostics[0].message == "import cycle detected: loop -> loop"


# =============================================================================
# Graph Algorithms
# =============================================================================

class TestGraphAlgorithms:
    """find_cycle and topological_levels on plain graphs."""

    def test_acyclic_graph_has_no_cycle(self):
        assert find_cycle({"a": ["b"], "b": ["c"], "c": []}) is None

    def test_cycle_is_reported_in_import_order(self):
        """Only the participants are listed, starting from the cycle's entry."""
        graph = {"main": ["x"], "x": ["y"], "y": ["z"], "z": ["x"]}
        assert find_cycle(graph) == ["x", "y", "z"]

    def test_cycle_search_is_deterministic(self):
        """The same graph always yields the same cycle."""
        graph = {"b": ["a"], "a": ["b"]}
        assert find_cycle(graph) == ["a", "b"]
        assert find_cycle(dict(reversed(list(graph.items())))) == ["a", "b"]

    def test_levels_of_chain(self):
        assert topological_levels({"a": ["b"], "b": ["c"], "c": []}) == [["c"], ["b"], ["a"]]

    def test_levels_of_diamond(self):
        """The two sides of a diamond are independent."""
        graph = {"top": ["left", "right"], "left": ["base"], "right": ["base"], "base": []}
        assert topological_levels(graph) == [["base"], ["left", "right"], ["top"]]

    @pytest.mark.parametrize("graph", [{}, {"only": []}])
    def test_trivial_graphs(self, graph):
        """Empty and single-module graphs need no ordering work."""
        assert find_cycle(graph) is None
        assert sum(topological_levels(graph), []) == list(graph)
