"""
Line classification shared by the Structure Detector, Table Parser and Row Emitter.
"""
import re
from typing import List, Optional, Sequence

from archivist.models.extraction import ColumnDefinition
from archivist.rules import HeuristicRules

_ALNUM = re.compile(r"[A-Za-z0-9]")
_DITTO_INK = re.compile(r"[\"“”″′’´`〃]")


class LineFilter:
    """
    Noise and header checks for OCR lines.

    Two notions of "skippable":
    - noise_reason(): every reason the Table Parser drops a line
    - is_structural_noise(): the subset that also removes a line from the
      Row Emitter's coverage list (page furniture, not short or garbled ink)
    """

    def __init__(self, rules: HeuristicRules, columns: Optional[Sequence[ColumnDefinition]] = None):
        self.rules = rules
        self.columns = list(columns or [])
        self._headers = [c.header.lower() for c in self.columns if c.header_exact or c.header_guess]

    # ==================== Headers ====================

    def is_header_line(self, line: str) -> bool:
        """True when at least half of the declared headers appear in the line (case-insensitive)."""
        if not self._headers:
            return False
        lower = line.lower()
        hits = sum(1 for h in self._headers if h and h in lower)
        return hits * 2 >= len(self._headers)

    def first_header_index(self, lines: Sequence[str]) -> Optional[int]:
        for i, line in enumerate(lines):
            if line.strip() and self.is_header_line(line):
                return i
        return None

    # ==================== Noise ====================

    def is_structural_noise(self, line: str) -> bool:
        stripped = line.strip()
        if not stripped:
            return True
        if self.rules.page_number_pattern.match(stripped):
            return True
        if self.rules.separator_pattern.match(stripped):
            return True
        return any(p.search(stripped) for p in self.rules.noise_patterns)

    def noise_reason(self, line: str) -> Optional[str]:
        """Reason the parser should skip this line, or None to keep it."""
        stripped = line.strip()
        if len(stripped) < 5:
            return "too-short"
        if self.rules.page_number_pattern.match(stripped):
            return "page-number"
        if self.rules.separator_pattern.match(stripped):
            return "separator"
        if not _ALNUM.search(stripped) and not self._all_ditto(stripped):
            return "non-alphanumeric"
        if any(p.search(stripped) for p in self.rules.noise_patterns):
            return "noise-phrase"
        if self.is_header_line(stripped):
            return "header"
        return None

    def _all_ditto(self, stripped: str) -> bool:
        tokens = stripped.split()
        return bool(tokens) and all(self.rules.is_ditto(t) for t in tokens)

    # ==================== Coverage ====================

    @staticmethod
    def has_ink(line: str) -> bool:
        """A letter, digit or ditto-like mark counts as ink; each such row is a person."""
        stripped = line.strip()
        if not stripped:
            return False
        return bool(_ALNUM.search(stripped) or _DITTO_INK.search(stripped))

    def data_lines(self, lines: Sequence[str]) -> List[str]:
        """
        Lines that may hold table rows: everything after the first header line
        (the preamble above it is dropped) minus blank lines.
        """
        start = 0
        header_at = self.first_header_index(lines)
        if header_at is not None:
            start = header_at
        return [l.rstrip() for l in lines[start:] if l.strip()]

    def coverage_lines(self, lines: Sequence[str]) -> List[str]:
        """Ink-bearing data lines that are not headers or page furniture."""
        return [
            l for l in self.data_lines(lines)
            if self.has_ink(l) and not self.is_header_line(l) and not self.is_structural_noise(l)
        ]
