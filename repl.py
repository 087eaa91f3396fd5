import argparse
import logging
import os
import sys
from typing import List, Optional

from reckon.reckon_constants import VERSION
from reckon.reckon_errors import CalcError
from reckon.reckon_runtime import ConsoleSink, ScriptRunner
from reckon.reckon_settings import Settings, load_settings, validate_precision

USER_CONFIG = "~/.reckon.yaml"


def prompt(text: str = ">> ") -> str:
    """Read one line; raises EOFError at end of input."""
    return input(text)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reckon", description="Interactive calculator and scripting language.")
    parser.add_argument("-r", "--rational", action="store_true", help="exact rational arithmetic")
    parser.add_argument("-d", "--decimal", type=int, metavar="N", help="decimal precision in digits")
    parser.add_argument("--degrees", action="store_true", help="trig functions use degrees")
    parser.add_argument("-q", "--quiet", action="store_true", help="do not display results")
    parser.add_argument("--results-only", action="store_true", help="display results without expressions")
    parser.add_argument("--config", metavar="PATH", help="YAML settings file")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("script", nargs="?", help="script file to run in batch mode")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="arguments available as $1..$n")
    return parser


def make_settings(options: argparse.Namespace) -> Settings:
    """Defaults, then ~/.reckon.yaml, then --config, then command-line flags."""
    settings = Settings()
    user_config = os.path.expanduser(USER_CONFIG)
    if os.path.exists(user_config):
        settings = load_settings(user_config, settings)
    if options.config:
        settings = load_settings(options.config, settings)
    if options.rational:
        settings.rational = True
    if options.decimal is not None:
        settings.precision = validate_precision(options.decimal)
    if options.degrees:
        settings.degrees = True
    if options.quiet:
        settings.quiet = True
    if options.results_only:
        settings.results_only = True
    if options.debug:
        settings.debug = True
    return settings


def run_script_file(runner: ScriptRunner, file_path: str) -> int:
    """Run a script non-interactively; the exit code is the error category."""
    result = runner.run_file(file_path)
    if result.status == 'error':
        return result.exit_code or 1
    return 0


def run_repl(runner: ScriptRunner) -> int:
    print(f"reckon v{VERSION}")
    print("Type 'exit' or press Ctrl+D to quit.")
    runner.files.base_dir = os.getcwd()
    while True:
        try:
            line = prompt().strip()
        except EOFError:
            print("\nExiting.")
            break
        except KeyboardInterrupt:
            print()
            continue
        if not line:
            continue
        if line in ("exit", "quit"):
            break
        # Errors were already reported through the sink; the loop goes on.
        runner.handle_script(line)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    options = build_parser().parse_args(argv)
    args = list(options.args)
    if args and args[0] == "--":
        args = args[1:]
    try:
        settings = make_settings(options)
    except CalcError as e:
        print(f"{e.kind}: {e.message}", file=sys.stderr)
        return e.exit_code
    if settings.debug:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s %(levelname)s: %(message)s")

    sink = ConsoleSink(settings)
    runner = ScriptRunner(settings, sink, args=args)
    if options.script:
        return run_script_file(runner, options.script)
    return run_repl(runner)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nExiting.")
