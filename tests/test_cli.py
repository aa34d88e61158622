# =============================================================================
# test_cli.py - Command-Line Interface Tests
# =============================================================================
# Tests for the crustyc command.
#
# Test coverage includes:
#   - Translating to stdout and into an output directory
#   - --check, --target, --ast and --root
#   - Exit codes for clean builds, source errors and bad arguments
#   - The shared exception handler
# =============================================================================

from pathlib import Path

import click
import pytest
from click.testing import CliRunner

from crusty import __version__
from crusty.cli.crustyc import default_root, main
from crusty.cli.errors import ExitCode, handle_cli_exception
from crusty.transpiler.errors import SemanticError, not_found
from crusty.errors import Span


# =============================================================================
# Helper Functions
# =============================================================================

def write(root: Path, relative: str, text: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def run(*args) -> "click.testing.Result":
    return CliRunner().invoke(main, [str(a) for a in args])


ADD = "int add(int a, int b) { return a + b; }\n"


def project(root: Path) -> Path:
    write(root, "geometry.crst", "struct Point { int x; int y; }\nint area(Point p) { return p.x * p.y; }\n")
    write(root, "main.crst", "#import crate.geometry\nint main() { return area((Point){ .x = 2, .y = 3 }); }\n")
    return root


# =============================================================================
# Translation
# =============================================================================

class TestTranslate:
    """Successful runs."""

    def test_single_file_to_stdout(self, tmp_path):
        result = run(write(tmp_path, "add.crst", ADD))
        assert result.exit_code == ExitCode.SUCCESS
        assert result.output == "pub fn add(a: i32, b: i32) -> i32 {\n    a + b\n}\n"

    def test_several_modules_get_headers(self, tmp_path):
        """Each module is introduced by a comment naming it."""
        result = run(project(tmp_path))
        assert result.exit_code == 0
        assert result.output.startswith("// geometry\n#[derive(Debug, Clone, Copy, PartialEq)]")
        assert "// main\nuse crate::geometry::*;" in result.output

    def test_output_directory(self, tmp_path):
        src = project(tmp_path / "src")
        out = tmp_path / "out"
        result = run(src, "-o", out)
        assert result.exit_code == 0
        assert f"Compiled 2 modules -> {out}" in result.output
        assert (out / "main.rs").read_text(encoding="utf-8").startswith("use crate::geometry::*;")
        assert (out / "geometry.rs").is_file()

    def test_crusty_target(self, tmp_path):
        result = run("--target", "crusty", write(tmp_path, "add.crst", "int add(int a,int b){return a+b;}"))
        assert result.exit_code == 0
        assert result.output == "int add(int a, int b) {\n    return a + b;\n}\n"

    def test_target_is_case_insensitive(self, tmp_path):
        result = run("-t", "RUST", write(tmp_path, "add.crst", ADD))
        assert result.exit_code == 0

    def test_check_generates_nothing(self, tmp_path):
        src = project(tmp_path / "src")
        out = tmp_path / "out"
        result = run("--check", src, "-o", out)
        assert result.exit_code == 0
        assert "Checked 2 modules, no errors" in result.output
        assert not out.exists()

    def test_explicit_root(self, tmp_path):
        """With --root, an entry file alone pulls in its imports."""
        src = project(tmp_path / "src")
        result = run("--root", src, src / "main.crst", "-j", "1")
        assert result.exit_code == 0
        assert "// geometry" in result.output

    def test_ast_dump(self, tmp_path):
        result = run("--ast", write(tmp_path, "add.crst", ADD))
        assert result.exit_code == 0
        assert result.output.startswith("SourceFile")
        assert "Function name='add'" in result.output

    def test_version(self):
        result = run("--version")
        assert result.exit_code == 0
        assert f"crustyc, version {__version__}" in result.output

    def test_verbose_prints_settings(self, tmp_path):
        result = run("-v", write(tmp_path, "add.crst", ADD))
        assert result.exit_code == 0
        assert "Target: rust" in result.output


# =============================================================================
# Failures
# =============================================================================

class TestFailures:
    """Exit codes and reports for failing runs."""

    def test_semantic_errors_exit_1(self, tmp_path):
        write(tmp_path, "a.crst", "int fa() { return missing_a; }\n")
        write(tmp_path, "b.crst", "int fb() { let bool b = 1; return 0; }\n")
        result = run(tmp_path)
        assert result.exit_code == ExitCode.BUILD_ERROR
        assert "error[semantic]: `missing_a` not found in this scope" in result.output
        assert "error[semantic]: mismatched types: expected `bool`, found `i32`" in result.output
        assert result.output.rstrip().endswith("2 errors")

    def test_nothing_written_on_error(self, tmp_path):
        src = tmp_path / "src"
        write(src, "a.crst", "int fa() { return missing; }\n")
        out = tmp_path / "out"
        result = run(src, "-o", out)
        assert result.exit_code == 1
        assert not out.exists()

    def test_parse_error(self, tmp_path):
        result = run(write(tmp_path, "bad.crst", "int main() { return 1 }\n"))
        assert result.exit_code == 1
        assert "bad.crst:1:23: error[parse]: expected `;`, found `}`" in result.output

    def test_unsupported_feature(self, tmp_path):
        result = run(write(tmp_path, "u.crst", "union U { int a; };\n"))
        assert result.exit_code == 1
        assert "`union` is not supported" in result.output

    def test_import_cycle(self, tmp_path):
        write(tmp_path, "a.crst", "#import crate.b\n")
        write(tmp_path, "b.crst", "#import crate.a\n")
        result = run(tmp_path)
        assert result.exit_code == 1
        assert "import cycle detected: a -> b -> a" in result.output

    def test_ast_of_broken_file(self, tmp_path):
        result = run("--ast", write(tmp_path, "bad.crst", "int f( {"))
        assert result.exit_code == 1
        assert "error[parse]" in result.output

    def test_ast_of_empty_directory(self, tmp_path):
        result = run("--ast", tmp_path)
        assert result.exit_code == ExitCode.INVALID_ARGS
        assert "no .crst files found" in result.output

    def test_missing_input(self, tmp_path):
        """click rejects paths that do not exist."""
        result = run(tmp_path / "absent.crst")
        assert result.exit_code == 2

    def test_no_inputs(self):
        assert run().exit_code == 2

    def test_jobs_must_be_positive(self, tmp_path):
        result = run("-j", "0", write(tmp_path, "add.crst", ADD))
        assert result.exit_code == 2

    def test_unknown_target(self, tmp_path):
        result = run("--target", "python", write(tmp_path, "add.crst", ADD))
        assert result.exit_code == 2


# =============================================================================
# Helpers
# =============================================================================

class TestHelpers:
    """default_root and handle_cli_exception."""

    def test_default_root_of_files_and_dirs(self, tmp_path):
        a = write(tmp_path, "a/x.crst", ADD)
        (tmp_path / "b").mkdir()
        assert default_root([a, tmp_path / "b"]) == tmp_path.resolve()

    def test_default_root_of_single_file(self, tmp_path):
        path = write(tmp_path, "pkg/mod.crst", ADD)
        assert default_root([path]) == (tmp_path / "pkg").resolve()

    def test_exit_code_values(self):
        assert [int(code) for code in ExitCode] == [0, 1, 2, 3]

    @pytest.mark.parametrize("error,code", [
        (SemanticError([not_found("x", Span())]), ExitCode.BUILD_ERROR),
        (click.BadParameter("bad"), ExitCode.INVALID_ARGS),
        (FileNotFoundError("gone"), ExitCode.INVALID_ARGS),
        (PermissionError("denied"), ExitCode.INVALID_ARGS),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ])
    def test_handle_cli_exception(self, error, code, capsys):
        with pytest.raises(SystemExit) as exc_info:
            handle_cli_exception(error)
        assert exc_info.value.code == code

    def test_internal_error_message(self, capsys):
        with pytest.raises(SystemExit):
            handle_cli_exception(RuntimeError("boom"))
        assert "Internal error: boom" in capsys.readouterr().err
