"""
Sanitizer fingerprinting from static disassembly.

Every sanitizer runtime leaves a distinctive footprint of calls into its own
``__asan_*``/``__msan_*``/``__ubsan_*`` namespace. The binary is disassembled
once per run and the calls into each namespace are counted; the declared
sanitizer then decides which bounds the triple must satisfy.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from build_checks import CheckResult, failed, passed
from check_config import (
    ENGINE_LIBFUZZER,
    SANITIZER_ADDRESS,
    SANITIZER_MEMORY,
    SANITIZER_UNDEFINED,
    BuildCheckConfig,
    BuildCheckError,
    Thresholds,
)
from fuzz_runner import TargetBinary


LOGGER = logging.getLogger(__name__)

CHECK_NAME = "sanitizer"


class DisassemblyError(BuildCheckError):
    pass


@dataclass(frozen=True)
class CallCounts:
    asan: int
    msan: int
    ubsan: int


def count_sanitizer_calls(disassembly: str, call_insn: str) -> CallCounts:
    """Count call lines whose target symbol lives in each sanitizer namespace."""
    patterns = {
        prefix: re.compile(call_insn + re.escape(f"__{prefix}"))
        for prefix in ("asan", "msan", "ubsan")
    }
    counts = {prefix: 0 for prefix in patterns}
    for line in (disassembly or "").splitlines():
        for prefix, pat in patterns.items():
            if pat.search(line):
                counts[prefix] += 1
    return CallCounts(asan=counts["asan"], msan=counts["msan"], ubsan=counts["ubsan"])


def disassemble(binary: Path, *, objdump_cmd: str = "objdump") -> str:
    cmd = [objdump_cmd, "-dC", str(binary)]
    try:
        proc = subprocess.run(
            cmd,
            check=False,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            errors="replace",
        )
    except OSError as e:
        raise DisassemblyError(f"cannot run {objdump_cmd}: {e}") from e
    if proc.returncode != 0:
        err = (proc.stderr or "").strip().splitlines()
        raise DisassemblyError(
            f"{objdump_cmd} rc={proc.returncode}: {err[-1] if err else 'no output'}"
        )
    return proc.stdout or ""


class SanitizerFingerprinter:
    """Holds the call count triple for one run; objdump runs at most once."""

    def __init__(self, cfg: BuildCheckConfig, target: TargetBinary) -> None:
        self.cfg = cfg
        self.target = target
        self._counts: Optional[CallCounts] = None

    def call_counts(self) -> CallCounts:
        if self._counts is None:
            text = disassemble(Path(self.target.identity), objdump_cmd=self.cfg.objdump_cmd)
            self._counts = count_sanitizer_calls(text, self.cfg.call_insn)
            LOGGER.info(
                "sanitizer calls in %s: asan=%d msan=%d ubsan=%d",
                self.target.name,
                self._counts.asan,
                self._counts.msan,
                self._counts.ubsan,
            )
        return self._counts


def _validate_exclusive_build(
    fuzzer: str,
    *,
    label: str,
    own_calls: int,
    other_label: str,
    other_calls: int,
    ubsan_calls: int,
    thresholds: Thresholds,
) -> CheckResult:
    if own_calls < thresholds.min_sanitizer_calls:
        return failed(
            CHECK_NAME,
            f"{fuzzer} does not seem to be compiled with {label} "
            f"({label.lower()} calls={own_calls} < {thresholds.min_sanitizer_calls}).",
        )
    if other_calls > thresholds.max_cross_sanitizer_calls:
        return failed(
            CHECK_NAME,
            f"{label} build of {fuzzer} seems to be compiled with {other_label} "
            f"({other_label.lower()} calls={other_calls}).",
        )
    if ubsan_calls > thresholds.max_ubsan_calls_in_non_ubsan_build:
        return failed(
            CHECK_NAME,
            f"{label} build of {fuzzer} seems to be compiled with UBSan "
            f"(ubsan calls={ubsan_calls} > {thresholds.max_ubsan_calls_in_non_ubsan_build}).",
        )
    return passed(CHECK_NAME)


def validate_asan_build(fuzzer: str, counts: CallCounts, thresholds: Thresholds) -> CheckResult:
    return _validate_exclusive_build(
        fuzzer,
        label="ASan",
        own_calls=counts.asan,
        other_label="MSan",
        other_calls=counts.msan,
        ubsan_calls=counts.ubsan,
        thresholds=thresholds,
    )


def validate_msan_build(fuzzer: str, counts: CallCounts, thresholds: Thresholds) -> CheckResult:
    return _validate_exclusive_build(
        fuzzer,
        label="MSan",
        own_calls=counts.msan,
        other_label="ASan",
        other_calls=counts.asan,
        ubsan_calls=counts.ubsan,
        thresholds=thresholds,
    )


def validate_ubsan_build(fuzzer: str, counts: CallCounts, thresholds: Thresholds) -> CheckResult:
    if counts.asan > thresholds.max_cross_sanitizer_calls:
        return failed(CHECK_NAME, f"UBSan build of {fuzzer} seems to be compiled with ASan (asan calls={counts.asan}).")
    if counts.msan > thresholds.max_cross_sanitizer_calls:
        return failed(CHECK_NAME, f"UBSan build of {fuzzer} seems to be compiled with MSan (msan calls={counts.msan}).")
    if counts.ubsan < thresholds.min_ubsan_calls:
        return failed(
            CHECK_NAME,
            f"{fuzzer} does not seem to be compiled with UBSan "
            f"(ubsan calls={counts.ubsan} < {thresholds.min_ubsan_calls}).",
        )
    return passed(CHECK_NAME)


def check_sanitizer(
    target: TargetBinary,
    cfg: BuildCheckConfig,
    fingerprinter: SanitizerFingerprinter,
) -> CheckResult:
    if target.sanitizer == SANITIZER_ADDRESS:
        validator = validate_asan_build
    elif target.sanitizer == SANITIZER_MEMORY:
        validator = validate_msan_build
    elif target.sanitizer == SANITIZER_UNDEFINED:
        # Other engines link enough UBSan-looking runtime that the counts
        # are indistinguishable from a non-UBSan build.
        if target.engine != ENGINE_LIBFUZZER:
            return passed(CHECK_NAME, f"UBSan footprint not checked for engine {target.engine!r}")
        validator = validate_ubsan_build
    else:
        return passed(CHECK_NAME, f"no footprint known for sanitizer {target.sanitizer!r}")

    try:
        counts = fingerprinter.call_counts()
    except DisassemblyError as e:
        return failed(CHECK_NAME, f"could not disassemble {target.name}: {e}")
    return validator(target.name, counts, cfg.thresholds)
