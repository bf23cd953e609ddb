from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError


ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT / "build_checker" / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from check_config import ConfigurationError, Thresholds, load_config


def test_defaults_match_oss_fuzz_conventions():
    cfg = load_config(env={})
    assert cfg.engine == "libfuzzer"
    assert cfg.sanitizer == "address"
    assert cfg.architecture == "x86_64"
    assert cfg.fuzzer_args == ("-rss_limit_mb=2560", "-timeout=25")
    assert cfg.check_seed_corpus is False
    assert cfg.afl_timeout_sec == 20
    assert cfg.thresholds == Thresholds(
        min_edges=100,
        min_sanitizer_calls=1000,
        min_ubsan_calls=170,
        max_ubsan_calls_in_non_ubsan_build=200,
        max_cross_sanitizer_calls=0,
    )


def test_environment_is_normalized():
    cfg = load_config(
        env={
            "FUZZING_ENGINE": " LibFuzzer ",
            "SANITIZER": "Memory",
            "ARCHITECTURE": "aarch64",
            "BAD_BUILD_CHECK_SEED_CORPUS": "yes",
            "BAD_BUILD_AFL_TIMEOUT_SEC": " 45 ",
            "FUZZER_ARGS": "-dict='my dict.txt'  -max_len=64",
        }
    )
    assert cfg.engine == "libfuzzer"
    assert cfg.sanitizer == "memory"
    assert cfg.architecture == "aarch64"
    assert cfg.check_seed_corpus is True
    assert cfg.afl_timeout_sec == 45
    assert cfg.fuzzer_args == ("-dict=my dict.txt", "-max_len=64")


@pytest.mark.parametrize("raw", ["abc", "1.5", "20s"])
def test_non_integer_afl_timeout_is_a_configuration_error(raw: str):
    with pytest.raises(ConfigurationError, match="BAD_BUILD_AFL_TIMEOUT_SEC must be an integer"):
        load_config(env={"FUZZING_ENGINE": "afl", "BAD_BUILD_AFL_TIMEOUT_SEC": raw})


@pytest.mark.parametrize("raw", ["0", "-5"])
def test_non_positive_afl_timeout_is_a_configuration_error(raw: str):
    with pytest.raises(ConfigurationError, match="afl_timeout_sec"):
        load_config(env={"FUZZING_ENGINE": "afl", "BAD_BUILD_AFL_TIMEOUT_SEC": raw})


def test_non_positive_afl_timeout_override_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        load_config(env={}, afl_timeout_sec=0)


def test_unbalanced_quote_in_fuzzer_args_is_a_configuration_error():
    with pytest.raises(ConfigurationError, match="cannot parse FUZZER_ARGS"):
        load_config(env={"FUZZER_ARGS": "-dict='unterminated"})


def test_blank_fuzzer_args_fall_back_to_defaults():
    cfg = load_config(env={"FUZZER_ARGS": "   "})
    assert cfg.fuzzer_args == ("-rss_limit_mb=2560", "-timeout=25")


def test_overrides_win_but_none_is_ignored():
    cfg = load_config(env={"BAD_BUILD_CHECK_SEED_CORPUS": "1"}, check_seed_corpus=None, objdump_cmd="llvm-objdump")
    assert cfg.check_seed_corpus is True
    assert cfg.objdump_cmd == "llvm-objdump"


def test_config_is_immutable():
    cfg = load_config(env={})
    with pytest.raises(ValidationError):
        cfg.engine = "afl"
    with pytest.raises(ValidationError):
        cfg.thresholds.min_edges = 1


@pytest.mark.parametrize("arch", ["riscv64", "arm", "X86_64", "mips"])
def test_unsupported_architecture_is_a_configuration_error(arch: str):
    with pytest.raises(ConfigurationError, match="unsupported architecture"):
        load_config(env={"ARCHITECTURE": arch})


def test_thresholds_file_overrides_defaults(tmp_path: Path):
    path = tmp_path / "thresholds.json"
    path.write_text(json.dumps({"min_edges": 50, "min_ubsan_calls": 120}), encoding="utf-8")

    cfg = load_config(env={"BAD_BUILD_THRESHOLDS_FILE": str(path)})

    assert cfg.thresholds.min_edges == 50
    assert cfg.thresholds.min_ubsan_calls == 120
    assert cfg.thresholds.min_sanitizer_calls == 1000


@pytest.mark.parametrize(
    "content",
    ["not json", "[1, 2]", json.dumps({"min_edgez": 5}), json.dumps({"min_edges": "many"})],
)
def test_malformed_thresholds_file_is_a_configuration_error(tmp_path: Path, content: str):
    path = tmp_path / "thresholds.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(env={}, thresholds_path=path)
