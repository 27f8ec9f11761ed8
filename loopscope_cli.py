import asyncio
import sys
from pathlib import Path

import yaml

import loopscope
from loopscope.loopscope_runtime import ScenarioRunner
from loopscope.loopscope_printer import Printer
from loopscope.loopscope_serialize import load_scenario_file, serialize

SCENARIO_DIR = Path(loopscope.__file__).resolve().parent / "scenarios"
DEMO_SCENARIOS = ("for-with-let-with-closure.yaml", "for-with-var-with-closure.yaml")


def parse_args(argv):
    """Splits argv into (scenario path or None, trace flag, output format)."""
    path = None
    trace = False
    fmt = "yaml"
    args = list(argv)
    while args:
        arg = args.pop(0)
        if arg == "--trace":
            trace = True
        elif arg == "--format":
            if not args:
                raise SystemExit("--format expects json or yaml")
            fmt = args.pop(0)
            if fmt not in ("json", "yaml"):
                raise SystemExit(f"unsupported format: {fmt}")
        elif arg.startswith("-"):
            raise SystemExit(f"unknown option: {arg}")
        else:
            path = arg
    return path, trace, fmt


async def run_scenario_file(file_path: str, trace: bool = False, fmt: str = "yaml"):
    """Run a scenario file and exit with appropriate status."""
    runner = ScenarioRunner()
    printer = Printer()
    try:
        scenario = load_scenario_file(file_path)
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    except (yaml.YAMLError, ValueError) as e:
        print(f"Error: could not parse {file_path}: {e}", file=sys.stderr)
        raise SystemExit(1)
    result = await runner.handle_scenario(scenario)
    # Print side effects (from `emit` and deferred closures)
    for effect in result.side_effects:
        if effect.get('topics') == ['stdout']:
            print(effect.get('message', ''))
    if trace and result.trace:
        print(printer.pformat_trace(result.trace))
    if result.status == 'error':
        print(result.error_message, file=sys.stderr)
        raise SystemExit(1)
    print(serialize(result.summary(), fmt=fmt).rstrip())


async def run_demo():
    """Run the bundled let/var closure scenarios side by side."""
    for name in DEMO_SCENARIOS:
        runner = ScenarioRunner()
        result = await runner.handle_scenario(load_scenario_file(SCENARIO_DIR / name))
        outputs = [e['message'] for e in result.side_effects if e.get('topics') == ['stdout']]
        print(f"{Path(name).stem}: {', '.join(outputs)}")


async def main(argv=None):
    """Run a scenario file when provided, otherwise the built-in demonstration."""
    path, trace, fmt = parse_args(sys.argv[1:] if argv is None else argv)
    if path is not None:
        await run_scenario_file(path, trace=trace, fmt=fmt)
        return
    print("loopscope demo: closures created in for-loop bodies")
    await run_demo()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    try:
        run()
    except KeyboardInterrupt:
        print("\nExiting.")
