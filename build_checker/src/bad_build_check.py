#!/usr/bin/env python3

#────────────
#
# Copyright 2025 Artificial Intelligence Cyber Challenge
#
# Permission is hereby granted, free of charge, to any person obtaining a copy of
# this software and associated documentation files (the “Software”), to deal in the
# Software without restriction, including without limitation the rights to use,
# copy, modify, merge, publish, distribute, sublicense, and/or sell copies of the
# Software, and to permit persons to whom the Software is furnished to do so,
# subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED “AS IS”, WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
# INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
# PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
# HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION
# OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE
# SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.
#
# ────────────

"""
bad_build_check.py
────────────────────

Decides whether a compiled fuzz target is fit for continuous fuzzing:
  • coverage instrumentation present (and not partial),
  • the declared sanitizer, and only that one, compiled in,
  • no crash or early exit on startup,
  • (optional) no crashing input in the seed corpus.

The process exit code is the number of failed checks; every failure is
printed as a ``BAD BUILD: ...`` line.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from build_checks import (
    CheckResult,
    Outcome,
    check_architecture,
    check_instrumentation,
    check_seed_corpus,
    check_startup_crash,
    failed,
)
from check_config import BuildCheckConfig, ConfigurationError, load_config
from fuzz_runner import FuzzRunner, TargetBinary, TranscriptCache
from sanitizer_fingerprint import SanitizerFingerprinter, check_sanitizer
from transcript_parsers import parser_for_engine


LOGGER = logging.getLogger(__name__)

# Distinct from any plausible failure count.
CONFIG_ERROR_EXIT_CODE = 125


@dataclass
class Verdict:
    target: TargetBinary
    results: List[CheckResult] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def messages(self) -> List[str]:
        return [r.diagnostic for r in self.results if r.failed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "binary": self.target.identity,
            "engine": self.target.engine,
            "sanitizer": self.target.sanitizer,
            "architecture": self.target.architecture,
            "failures": self.failures,
            "checks": [r.to_dict() for r in self.results],
        }


def run_checks(cfg: BuildCheckConfig, binary: Path) -> Verdict:
    """Run every enabled check against one binary and collect the verdict.

    Checks are isolated from each other: an unexpected error inside one is
    recorded as that check's failure and the remaining checks still run.
    """
    target = TargetBinary(
        path=Path(binary),
        architecture=cfg.architecture,
        sanitizer=cfg.sanitizer,
        engine=cfg.engine,
    )
    parser = parser_for_engine(cfg.engine)
    fingerprinter = SanitizerFingerprinter(cfg, target)
    verdict = Verdict(target=target)

    with TranscriptCache(FuzzRunner(cfg, target), Path(cfg.tmp_dir)) as cache:
        checks: List[Tuple[str, Callable[[], CheckResult]]] = [
            ("instrumentation", lambda: check_instrumentation(target, cfg, cache, parser)),
            ("sanitizer", lambda: check_sanitizer(target, cfg, fingerprinter)),
            ("startup_crash", lambda: check_startup_crash(target, cfg, cache, parser)),
        ]
        if cfg.architecture == "i386":
            checks.append(("architecture", lambda: check_architecture(target)))
        if cfg.check_seed_corpus:
            checks.append(("seed_corpus", lambda: check_seed_corpus(target, cfg, cache)))

        for name, fn in checks:
            try:
                result = fn()
            except Exception as e:  # generic safety net
                LOGGER.exception("%s check raised", name)
                result = failed(name, f"{name} check of {target.name} raised an unexpected error: {e}")
            if result.outcome is Outcome.INDETERMINATE:
                LOGGER.info("[%s] indeterminate: %s", name, result.message)
            else:
                LOGGER.debug("[%s] %s %s", name, result.outcome.value, result.message)
            verdict.results.append(result)

    return verdict


def report_verdict(verdict: Verdict, *, stream=None) -> None:
    out = stream or sys.stdout
    for result in verdict.results:
        if not result.failed:
            continue
        print(result.diagnostic, file=out)
        if result.transcript:
            print(result.transcript, file=out)
    out.flush()


def write_report(path: Path, verdict: Verdict) -> None:
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", dir=str(path.parent))
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(verdict.to_dict(), f, ensure_ascii=False, indent=2)
            f.write("\n")
        Path(tmp_name).replace(path)
    finally:
        Path(tmp_name).unlink(missing_ok=True)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Check that a fuzz target binary is fit for continuous fuzzing.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("fuzz_target", type=Path, help="Path to the fuzz target binary")
    parser.add_argument("--env-file", type=Path, default="./.env", help="dotenv file with FUZZING_ENGINE/SANITIZER/... (optional)")
    parser.add_argument("--thresholds", type=Path, help="JSON file overriding the detection thresholds")
    parser.add_argument("--check-seed-corpus", action="store_true", help="Also replay the seed corpus (libFuzzer only)")
    parser.add_argument("--report", type=Path, help="Write the verdict as JSON to this path")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    load_dotenv(os.path.expanduser(str(args.env_file)))

    try:
        cfg = load_config(
            thresholds_path=args.thresholds,
            check_seed_corpus=True if args.check_seed_corpus else None,
        )
    except ConfigurationError as e:
        print(f"CONFIG ERROR: {e}", file=sys.stderr)
        return CONFIG_ERROR_EXIT_CODE

    LOGGER.info(
        "checking %s (engine=%s sanitizer=%s arch=%s)",
        args.fuzz_target,
        cfg.engine,
        cfg.sanitizer,
        cfg.architecture,
    )
    verdict = run_checks(cfg, args.fuzz_target)
    report_verdict(verdict)
    if args.report:
        write_report(args.report, verdict)
    return verdict.failures


if __name__ == "__main__":
    sys.exit(main())
