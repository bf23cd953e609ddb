from __future__ import annotations

import re
from typing import Optional

from check_config import ENGINE_AFL, ENGINE_LIBFUZZER


# "INFO: Loaded 1 modules   (2345 inline 8-bit counters): 2345 [0x..., 0x...),"
# Capture group "edges" is the count after the colon.
_LIBFUZZER_LOADED_MODULES_RE = re.compile(
    r"INFO: Loaded \d+ module.*\(.*(?:counters|guards)\):\s+(?P<edges>\d+)"
)


class TranscriptParser:
    """Engine output grammar. Unknown engines expose no signals at all."""

    engine = ""
    no_instrumentation_marker: Optional[str] = None
    crash_markers: tuple[str, ...] = ()

    def has_no_instrumentation_marker(self, text: str) -> bool:
        if not self.no_instrumentation_marker:
            return False
        return self.no_instrumentation_marker in (text or "")

    def extract_edge_count(self, text: str) -> Optional[int]:
        return None

    def has_crash_marker(self, text: str) -> bool:
        return any(m in (text or "") for m in self.crash_markers)

    def has_completed_runs(self, text: str, runs: int) -> Optional[bool]:
        """True/False when the engine reports completion, None when it never does."""
        return None


class LibFuzzerTranscriptParser(TranscriptParser):
    engine = ENGINE_LIBFUZZER
    no_instrumentation_marker = "ERROR: no interesting inputs were found. Is the code instrumented"

    def extract_edge_count(self, text: str) -> Optional[int]:
        # First match wins; later modules (e.g. DSOs) are not summed.
        for line in (text or "").splitlines():
            m = _LIBFUZZER_LOADED_MODULES_RE.search(line)
            if m:
                return int(m.group("edges"))
        return None

    def has_completed_runs(self, text: str, runs: int) -> Optional[bool]:
        return f"Done {runs} runs" in (text or "")


class AflTranscriptParser(TranscriptParser):
    engine = ENGINE_AFL
    no_instrumentation_marker = "No instrumentation detected"
    crash_markers = (
        "PROGRAM ABORT",
        "Fork server crashed",
        "Target binary crashed",
        "Target binary terminated",
    )


_PARSERS: dict[str, type[TranscriptParser]] = {
    ENGINE_LIBFUZZER: LibFuzzerTranscriptParser,
    ENGINE_AFL: AflTranscriptParser,
}


def parser_for_engine(engine: str) -> TranscriptParser:
    return _PARSERS.get((engine or "").strip().lower(), TranscriptParser)()
