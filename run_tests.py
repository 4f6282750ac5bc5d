#!/usr/bin/env python3
"""
Test runner for VD Curation.

Selects tests by curation component (store, diff, release, ...) rather than
by path, so a change to one module can be checked together with the
release cycle that exercises it end to end.
"""

import os
import sys
import argparse
import subprocess
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent
UNIT_DIR = Path("tests/unit")
INTEGRATION_DIR = Path("tests/integration")


def available_components():
    """Components with a unit test module, e.g. ``store`` for test_store.py."""
    return sorted(path.stem[len("test_"):] for path in (PROJECT_ROOT / UNIT_DIR).glob("test_*.py"))


def parse_args(argv=None):
    """Parse command-line arguments for the test runner."""
    parser = argparse.ArgumentParser(description="VD Curation Test Runner")

    parser.add_argument("components", nargs="*", metavar="COMPONENT",
                        help="Components to test (e.g. store release); all when omitted")
    parser.add_argument("--with-workflow", action="store_true",
                        help="Also run the integration release cycle")
    parser.add_argument("--workflow-only", action="store_true",
                        help="Run only the integration release cycle")
    parser.add_argument("--skip-slow", action="store_true",
                        help="Skip tests that start processes or background jobs")
    parser.add_argument("-k", "--keyword", help="Only run tests matching this pytest expression")
    parser.add_argument("-x", "--exitfirst", action="store_true", help="Stop at the first failure")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--list", action="store_true", help="List the components and exit")

    args = parser.parse_args(argv)

    unknown = sorted(set(args.components) - set(available_components()))
    if unknown:
        parser.error(f"unknown components: {', '.join(unknown)} "
                     f"(choose from {', '.join(available_components())})")

    return args


def build_command(args):
    """Build the pytest command line for the selected components."""
    cmd = [sys.executable, "-m", "pytest"]

    if args.workflow_only:
        targets = [str(INTEGRATION_DIR)]
    elif args.components:
        targets = [str(UNIT_DIR / f"test_{name}.py") for name in args.components]
        if args.with_workflow:
            targets.append(str(INTEGRATION_DIR))
    else:
        targets = ["tests/"]
    cmd.extend(targets)

    if args.verbose:
        cmd.append("-v")
    if args.exitfirst:
        cmd.append("-x")
    if args.keyword:
        cmd.extend(["-k", args.keyword])
    if args.skip_slow:
        cmd.extend(["-m", "not slow"])

    return cmd


def main(argv=None):
    """Main entry point for the test runner."""
    args = parse_args(argv)
    os.chdir(PROJECT_ROOT)

    if args.list:
        for name in available_components():
            print(name)
        return 0

    cmd = build_command(args)
    print(f"Running: {' '.join(cmd)}")
    return subprocess.run(cmd).returncode


if __name__ == "__main__":
    sys.exit(main())
