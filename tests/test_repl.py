import importlib.util
import sys
from pathlib import Path
import uuid
import pytest


def _load_repl_module():
    """Dynamically load the top-level repl.py as a module with a unique name."""
    repl_path = Path(__file__).resolve().parents[1] / "repl.py"
    mod_name = f"reckon_repl_for_test_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(mod_name, str(repl_path))
    mod = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod


@pytest.fixture
def repl(monkeypatch, tmp_path):
    mod = _load_repl_module()
    monkeypatch.setattr(mod, "USER_CONFIG", str(tmp_path / "no-such-config.yaml"))
    return mod


def feed(monkeypatch, repl, *lines):
    pending = iter(lines)

    def fake_prompt(text: str = ">> ") -> str:
        try:
            return next(pending)
        except StopIteration:
            raise EOFError
    monkeypatch.setattr(repl, "prompt", fake_prompt)


def test_repl_exit_immediately(monkeypatch, capsys, repl):
    feed(monkeypatch, repl, "exit")

    assert repl.main([]) == 0
    out = capsys.readouterr().out
    assert "reckon v1.0.0" in out
    assert "Type 'exit' or press Ctrl+D to quit." in out
    assert "Exiting." not in out


def test_repl_prints_results_and_messages(monkeypatch, capsys, repl):
    feed(monkeypatch, repl, '$echo "hello from reckon"', "", "x = 1 + 2", "x * 2")

    repl.main([])
    out, err = capsys.readouterr()
    assert "hello from reckon" in out
    assert "x = 1 + 2 -> 3" in out
    assert "x * 2 -> 6" in out
    # End of input leaves the loop cleanly.
    assert out.rstrip().endswith("Exiting.")
    assert err == ""


def test_repl_errors_print_to_stderr_and_loop_continues(monkeypatch, capsys, repl):
    feed(monkeypatch, repl, "1 / 0", "2 + 2", "quit")

    repl.main([])
    out, err = capsys.readouterr()
    assert "ArithmeticError: Divide by zero" in err
    assert "2 + 2 -> 4" in out


def test_repl_session_state_persists_between_lines(monkeypatch, capsys, repl):
    feed(monkeypatch, repl, "def sq(a) = a * a", "sq(12)")

    repl.main(["--results-only"])
    out = capsys.readouterr().out
    assert "\n144\n" in out


def test_batch_mode_exit_codes(tmp_path, capsys, repl):
    ok = tmp_path / "ok.calc"
    ok.write_text("$echo $1, $#\n", encoding="utf-8")
    assert repl.main([str(ok), "3", "4"]) == 0
    assert "3 2" in capsys.readouterr().out

    bad = tmp_path / "bad.calc"
    bad.write_text("y = undefined_name\n", encoding="utf-8")
    assert repl.main([str(bad)]) == 8
    assert "UndefinedNameError" in capsys.readouterr().err

    assert repl.main([str(tmp_path / "missing.calc")]) == 11


def test_command_line_flags_shape_settings(tmp_path, repl):
    config = tmp_path / "settings.yaml"
    config.write_text("precision: 50\nsort-keys: true\n", encoding="utf-8")
    options = repl.build_parser().parse_args(["-r", "--degrees", "--config", str(config), "-d", "20"])
    settings = repl.make_settings(options)
    assert settings.rational is True
    assert settings.degrees is True
    assert settings.sort_keys is True
    assert settings.precision == 20


def test_bad_config_reports_and_fails(tmp_path, capsys, repl):
    config = tmp_path / "settings.yaml"
    config.write_text("nonsense: 1\n", encoding="utf-8")
    assert repl.main(["--config", str(config)]) == 4
    assert "Unknown setting" in capsys.readouterr().err
