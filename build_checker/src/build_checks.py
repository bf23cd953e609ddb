from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Any

from check_config import ENGINE_AFL, ENGINE_LIBFUZZER, BuildCheckConfig
from fuzz_runner import RunIntent, TargetBinary, TranscriptCache
from transcript_parsers import TranscriptParser


LOGGER = logging.getLogger(__name__)

FILE_CMD = "file"


class Outcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INDETERMINATE = "indeterminate"


@dataclass
class CheckResult:
    name: str
    outcome: Outcome
    message: str = ""
    # Raw transcript, only set for crash-type failures.
    transcript: str = ""

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAIL

    @property
    def diagnostic(self) -> str:
        return f"BAD BUILD: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "outcome": self.outcome.value, "message": self.message}


def passed(name: str, message: str = "") -> CheckResult:
    return CheckResult(name=name, outcome=Outcome.PASS, message=message)


def failed(name: str, message: str, *, transcript: str = "") -> CheckResult:
    return CheckResult(name=name, outcome=Outcome.FAIL, message=message, transcript=transcript)


def indeterminate(name: str, message: str) -> CheckResult:
    return CheckResult(name=name, outcome=Outcome.INDETERMINATE, message=message)


def smoke_intent(cfg: BuildCheckConfig) -> RunIntent:
    """The short run shared by the instrumentation and startup-crash checks."""
    if cfg.engine == ENGINE_AFL:
        return RunIntent(timeout_sec=cfg.afl_timeout_sec)
    return RunIntent(runs=cfg.min_runs, extra_args=("-seed=1",))


def check_instrumentation(
    target: TargetBinary,
    cfg: BuildCheckConfig,
    cache: TranscriptCache,
    parser: TranscriptParser,
) -> CheckResult:
    name = "instrumentation"
    transcript = cache.get(smoke_intent(cfg))
    if transcript is None:
        return passed(name, f"engine {target.engine!r} cannot be run directly; skipped")

    if parser.has_no_instrumentation_marker(transcript.text):
        return failed(name, f"{target.name} does not seem to have coverage instrumentation.")

    if target.engine != ENGINE_LIBFUZZER:
        return passed(name)

    edges = parser.extract_edge_count(transcript.text)
    LOGGER.debug("edge count for %s: %s", target.name, edges)
    if edges is None:
        # A target that never started never logs this line either.
        return indeterminate(
            name,
            f"could not find the number of edges for {target.name}; deferring to the startup crash check",
        )
    if edges < cfg.thresholds.min_edges:
        return failed(
            name,
            f"{target.name} seems to have only partial coverage instrumentation "
            f"(edges={edges} < {cfg.thresholds.min_edges}).",
        )
    return passed(name, f"edges={edges}")


def check_startup_crash(
    target: TargetBinary,
    cfg: BuildCheckConfig,
    cache: TranscriptCache,
    parser: TranscriptParser,
) -> CheckResult:
    name = "startup_crash"
    transcript = cache.get(smoke_intent(cfg))
    if transcript is None:
        return passed(name, f"engine {target.engine!r} cannot be run directly; skipped")

    completed = parser.has_completed_runs(transcript.text, cfg.min_runs)
    if completed is False or parser.has_crash_marker(transcript.text):
        return failed(
            name,
            f"{target.name} seems to have either startup crash or exit:",
            transcript=transcript.text,
        )
    return passed(name)


def check_seed_corpus(
    target: TargetBinary,
    cfg: BuildCheckConfig,
    cache: TranscriptCache,
) -> CheckResult:
    name = "seed_corpus"
    if target.engine != ENGINE_LIBFUZZER:
        return passed(name, "seed corpus replay is libFuzzer only; skipped")

    intent = RunIntent(runs=0, extra_args=cfg.fuzzer_args)
    transcript = cache.get(intent)
    if transcript is None:
        return passed(name)
    if transcript.rc != 0:
        return failed(
            name,
            f"{target.name} has a crashing input in its seed corpus:",
            transcript=transcript.text,
        )
    return passed(name)


def check_architecture(target: TargetBinary) -> CheckResult:
    """i386 builds must really be 32-bit ELF; `file` reports the class."""
    name = "architecture"
    try:
        proc = subprocess.run(
            [FILE_CMD, target.identity],
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            errors="replace",
        )
    except OSError as e:
        return indeterminate(name, f"cannot run {FILE_CMD!r}: {e}")
    if proc.returncode != 0:
        return indeterminate(name, f"{FILE_CMD} rc={proc.returncode}: {(proc.stderr or '').strip()}")

    if "ELF 32-bit" not in (proc.stdout or ""):
        return failed(name, f"{target.name} is not built for architecture: {target.architecture}")
    return passed(name)
