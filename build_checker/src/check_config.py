from __future__ import annotations

import json
import os
import shlex
import tempfile
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError


ENGINE_LIBFUZZER = "libfuzzer"
ENGINE_AFL = "afl"

SANITIZER_ADDRESS = "address"
SANITIZER_MEMORY = "memory"
SANITIZER_UNDEFINED = "undefined"

# objdump call mnemonics per architecture; the trailing "<" anchors the symbol.
CALL_INSN_BY_ARCH: dict[str, str] = {
    "x86_64": r"callq?\s+[0-9a-f]+\s+<",
    "i386": r"call\s+[0-9a-f]+\s+<",
    "aarch64": r"bl\s+[0-9a-f]+\s+<",
}

DEFAULT_FUZZER_ARGS = "-rss_limit_mb=2560 -timeout=25"
DEFAULT_AFL_TIMEOUT_SEC = 20
MIN_NUMBER_OF_RUNS = 4


class BuildCheckError(RuntimeError):
    pass


class ConfigurationError(BuildCheckError):
    """Fatal misconfiguration detected before any check runs."""


class Thresholds(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Empirically calibrated against a minimal baseline target.
    min_edges: int = 100
    min_sanitizer_calls: int = 1000
    min_ubsan_calls: int = 170
    max_ubsan_calls_in_non_ubsan_build: int = 200
    max_cross_sanitizer_calls: int = 0


class BuildCheckConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    engine: str = ENGINE_LIBFUZZER
    sanitizer: str = SANITIZER_ADDRESS
    architecture: str = "x86_64"
    fuzzer_args: tuple[str, ...] = tuple(shlex.split(DEFAULT_FUZZER_ARGS))

    run_fuzzer_cmd: str = "run_fuzzer"
    objdump_cmd: str = "objdump"
    tmp_dir: str = Field(default_factory=tempfile.gettempdir)

    min_runs: int = MIN_NUMBER_OF_RUNS
    # AFL runs never end on their own; the timeout is the only bound.
    afl_timeout_sec: int = Field(default=DEFAULT_AFL_TIMEOUT_SEC, gt=0)
    check_seed_corpus: bool = False

    thresholds: Thresholds = Field(default_factory=Thresholds)

    @property
    def call_insn(self) -> str:
        return CALL_INSN_BY_ARCH[self.architecture]


def _is_truthy(raw: str | None, default: bool = False) -> bool:
    val = (raw or "").strip().lower()
    if not val:
        return default
    return val in {"1", "true", "yes", "on"}


def _parse_int(name: str, raw: str | None, *, default: int) -> int:
    txt = (raw or "").strip()
    if not txt:
        return default
    try:
        return int(txt)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {txt!r}") from e


def _parse_fuzzer_args(raw: str | None) -> tuple[str, ...]:
    txt = (raw or "").strip() or DEFAULT_FUZZER_ARGS
    try:
        return tuple(shlex.split(txt))
    except ValueError as e:
        raise ConfigurationError(f"cannot parse FUZZER_ARGS {txt!r}: {e}") from e


def load_thresholds(path: Path) -> Thresholds:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"cannot read thresholds file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"thresholds file {path} must contain a JSON object")
    try:
        return Thresholds(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"invalid thresholds in {path}: {e}") from e


def load_config(
    env: Mapping[str, str] | None = None,
    *,
    thresholds_path: Path | None = None,
    **overrides: Any,
) -> BuildCheckConfig:
    """Build the run configuration from the environment, exactly once.

    ``overrides`` win over environment values (used for CLI flags).
    Raises ConfigurationError for an unsupported architecture or any
    value that cannot be parsed or validated.
    """
    env = os.environ if env is None else env

    if thresholds_path is None:
        raw_path = (env.get("BAD_BUILD_THRESHOLDS_FILE") or "").strip()
        if raw_path:
            thresholds_path = Path(raw_path).expanduser()
    thresholds = load_thresholds(thresholds_path) if thresholds_path else Thresholds()

    values: dict[str, Any] = {
        "engine": (env.get("FUZZING_ENGINE") or ENGINE_LIBFUZZER).strip().lower(),
        "sanitizer": (env.get("SANITIZER") or SANITIZER_ADDRESS).strip().lower(),
        "architecture": (env.get("ARCHITECTURE") or "x86_64").strip(),
        "fuzzer_args": _parse_fuzzer_args(env.get("FUZZER_ARGS")),
        "run_fuzzer_cmd": (env.get("BAD_BUILD_RUN_FUZZER") or "run_fuzzer").strip(),
        "objdump_cmd": (env.get("BAD_BUILD_OBJDUMP") or "objdump").strip(),
        "tmp_dir": (env.get("BAD_BUILD_TMP_DIR") or tempfile.gettempdir()).strip(),
        "afl_timeout_sec": _parse_int(
            "BAD_BUILD_AFL_TIMEOUT_SEC",
            env.get("BAD_BUILD_AFL_TIMEOUT_SEC"),
            default=DEFAULT_AFL_TIMEOUT_SEC,
        ),
        "check_seed_corpus": _is_truthy(env.get("BAD_BUILD_CHECK_SEED_CORPUS")),
        "thresholds": thresholds,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})

    if values["architecture"] not in CALL_INSN_BY_ARCH:
        raise ConfigurationError(
            f"unsupported architecture: {values['architecture']!r} "
            f"(expected one of {', '.join(sorted(CALL_INSN_BY_ARCH))})"
        )
    try:
        return BuildCheckConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e
