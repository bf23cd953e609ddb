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
fuzz_runner.py
────────────────────

Runs a fuzz target through the external ``run_fuzzer`` driver with the
calling convention of the configured engine, and keeps one transcript per
(binary, run intent) for the lifetime of a check run.

  • libFuzzer: direct invocation with ``-runs=N``; no external timeout.
  • AFL: wall-clock timeout, SIGINT on expiry so the driver can flush state.
  • anything else: nothing to run.
"""

from __future__ import annotations

import hashlib
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from check_config import ENGINE_AFL, ENGINE_LIBFUZZER, BuildCheckConfig


LOGGER = logging.getLogger(__name__)

# How long an interrupted driver gets to flush before it is killed.
INTERRUPT_GRACE_SEC = 5


# ────────────────────────────────────────────────────────────────────────────
# Data model
# ────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TargetBinary:
    path: Path
    architecture: str
    sanitizer: str
    engine: str

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def identity(self) -> str:
        # Full resolved path; bare basenames collide across output dirs.
        return str(self.path.expanduser().resolve())


@dataclass(frozen=True)
class RunIntent:
    runs: Optional[int] = None
    timeout_sec: int = 0
    extra_args: Tuple[str, ...] = ()

    def key(self) -> str:
        return hashlib.sha1(repr(self).encode("utf-8")).hexdigest()[:8]


@dataclass
class Transcript:
    text: str
    rc: int
    timed_out: bool = False
    path: Optional[Path] = field(default=None, compare=False)


# ────────────────────────────────────────────────────────────────────────────
# Subprocess helpers
# ────────────────────────────────────────────────────────────────────────────

def _tail_lines(s: str, *, max_lines: int = 40) -> str:
    lines = (s or "").strip("\n").splitlines()
    return "\n".join(lines[-max_lines:])


def _run_cmd_capture(
    cmd: Sequence[str],
    *,
    timeout: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> Tuple[int, str, bool]:
    """Run a command with stderr merged into stdout.

    On timeout the child gets SIGINT rather than SIGKILL; its own exit status
    is preserved. It is only killed if it ignores the interrupt.

    Returns: (rc, output, timed_out)
    """
    try:
        proc = subprocess.Popen(
            list(cmd),
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except OSError as e:
        return 127, f"failed to execute {cmd[0]}: {e}\n", False

    timed_out = False
    try:
        out, _ = proc.communicate(timeout=timeout if timeout and timeout > 0 else None)
    except subprocess.TimeoutExpired:
        timed_out = True
        LOGGER.debug("timeout after %ss; sending SIGINT to pid %s", timeout, proc.pid)
        proc.send_signal(signal.SIGINT)
        try:
            out, _ = proc.communicate(timeout=INTERRUPT_GRACE_SEC)
        except subprocess.TimeoutExpired:
            LOGGER.warning("process ignored SIGINT for %ss; killing", INTERRUPT_GRACE_SEC)
            proc.kill()
            out, _ = proc.communicate()
    return int(proc.returncode or 0), out or "", timed_out


# ────────────────────────────────────────────────────────────────────────────
# Runner
# ────────────────────────────────────────────────────────────────────────────

class FuzzRunner:
    """Engine-specific invocation of one target binary."""

    def __init__(self, cfg: BuildCheckConfig, target: TargetBinary) -> None:
        self.cfg = cfg
        self.target = target

    def _base_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["OUT"] = str(Path(self.target.identity).parent)
        env["FUZZING_ENGINE"] = self.target.engine
        env["SANITIZER"] = self.target.sanitizer
        env["ARCHITECTURE"] = self.target.architecture
        return env

    def build_command(self, intent: RunIntent) -> Optional[Tuple[List[str], Dict[str, str], int]]:
        """Return (argv, env, timeout) for this engine, or None if it cannot be driven."""
        cmd = [self.cfg.run_fuzzer_cmd, self.target.name]
        env = self._base_env()

        if self.target.engine == ENGINE_LIBFUZZER:
            if intent.runs is not None:
                cmd.append(f"-runs={intent.runs}")
            cmd.extend(intent.extra_args)
            return cmd, env, intent.timeout_sec

        if self.target.engine == ENGINE_AFL:
            env["AFL_NO_UI"] = "1"
            env["SKIP_SEED_CORPUS"] = "1"
            cmd.extend(intent.extra_args)
            return cmd, env, intent.timeout_sec or self.cfg.afl_timeout_sec

        return None

    def run(self, intent: RunIntent) -> Optional[Transcript]:
        built = self.build_command(intent)
        if built is None:
            LOGGER.debug("engine %r has no executor; skipping run", self.target.engine)
            return None
        cmd, env, timeout = built

        print(f"[*] ➜  {' '.join(cmd)}", file=sys.stderr, flush=True)
        rc, out, timed_out = _run_cmd_capture(cmd, timeout=timeout, env=env)
        LOGGER.debug("rc=%s timed_out=%s output (tail):\n%s", rc, timed_out, _tail_lines(out))
        return Transcript(text=out, rc=rc, timed_out=timed_out)


class TranscriptCache:
    """Lazy, per-run memo of transcripts keyed by (binary identity, run intent).

    Each transcript is also written to the temporary directory so it can be
    inspected while the run is in progress; files are removed on close().
    """

    def __init__(self, runner: FuzzRunner, tmp_dir: Path) -> None:
        self.runner = runner
        self.tmp_dir = Path(tmp_dir)
        self._entries: Dict[Tuple[str, RunIntent], Optional[Transcript]] = {}

    def __enter__(self) -> "TranscriptCache":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def transcript_path(self, intent: RunIntent) -> Path:
        target = self.runner.target
        digest = hashlib.sha1(target.identity.encode("utf-8", errors="replace")).hexdigest()[:12]
        return self.tmp_dir / f"{target.name}-{digest}-{intent.key()}.output"

    def get(self, intent: RunIntent) -> Optional[Transcript]:
        key = (self.runner.target.identity, intent)
        if key in self._entries:
            return self._entries[key]

        transcript = self.runner.run(intent)
        if transcript is not None:
            path = self.transcript_path(intent)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(transcript.text, encoding="utf-8", errors="replace")
                transcript.path = path
            except OSError as e:
                LOGGER.warning("could not persist transcript to %s: %s", path, e)
        self._entries[key] = transcript
        return transcript

    def close(self) -> None:
        for transcript in self._entries.values():
            if transcript is not None and transcript.path is not None:
                transcript.path.unlink(missing_ok=True)
        self._entries.clear()
