"""
Structure Detector - classifies OCR text as tab/pipe-delimited, fixed-width,
whitespace table or narrative prose.

Rules are applied in a fixed order and the first match wins, so ties resolve
deterministically.
"""
from collections import Counter
from typing import List, Optional, Sequence

from archivist.models.extraction import ColumnDefinition, DetectedStructure, StructureKind
from archivist.rules import HeuristicRules, load_rules
from archivist.utils.logger import get_logger
from archivist.utils.text_lines import LineFilter

logger = get_logger(__name__)

SAMPLE_SIZE = 20
DELIMITER_SHARE = 0.5
BOUNDARY_SHARE = 0.4
BOUNDARY_MERGE_DISTANCE = 3
# A boundary seen on a single line is a word end, not a column
MIN_SHARED_LINES = 2
# Without declared columns, a fixed-width layout needs at least this many boundaries
MIN_UNDECLARED_BOUNDARIES = 2


class StructureDetector:

    def __init__(self, rules: Optional[HeuristicRules] = None):
        self.rules = rules or load_rules()

    def sample(self, lines: Sequence[str], columns: Sequence[ColumnDefinition]) -> List[str]:
        line_filter = LineFilter(self.rules, columns)
        sampled = []
        for line in line_filter.data_lines(lines):
            if line_filter.noise_reason(line) is None:
                sampled.append(line)
            if len(sampled) >= SAMPLE_SIZE:
                break
        return sampled

    def detect(self, lines: Sequence[str], columns: Optional[Sequence[ColumnDefinition]] = None) -> DetectedStructure:
        """
        Classify the layout of OCR lines.

        Args:
            lines: OCR text split into lines
            columns: Declared column definitions (may be empty)

        Returns:
            DetectedStructure with kind, boundaries/delimiter and confidence
        """
        columns = list(columns or [])
        sample = self.sample(lines, columns)

        if not sample:
            logger.debug("No non-noise lines to sample; defaulting to whitespace-table")
            return DetectedStructure(kind=StructureKind.WHITESPACE_TABLE, confidence=0.5)

        n = len(sample)

        tabbed = sum(1 for l in sample if "\t" in l)
        if tabbed >= n * DELIMITER_SHARE:
            return DetectedStructure(kind=StructureKind.TAB_DELIMITED, delimiter="\t", confidence=0.9)

        piped = sum(1 for l in sample if "|" in l)
        if piped >= n * DELIMITER_SHARE:
            return DetectedStructure(kind=StructureKind.PIPE_DELIMITED, delimiter="|", confidence=0.9)

        boundaries = self.find_boundaries(sample)
        required = len(columns) - 1 if columns else MIN_UNDECLARED_BOUNDARIES
        if boundaries and len(boundaries) >= required:
            logger.debug(f"Fixed-width layout with boundaries {boundaries}")
            return DetectedStructure(
                kind=StructureKind.FIXED_WIDTH,
                column_positions=boundaries,
                confidence=0.7 if columns else 0.6,
            )

        return DetectedStructure(kind=StructureKind.WHITESPACE_TABLE, confidence=0.5)

    @staticmethod
    def find_boundaries(sample: Sequence[str]) -> List[int]:
        """
        Column boundaries shared by enough lines.

        A position counts for a line when the line turns from non-space to
        space there. Candidates within BOUNDARY_MERGE_DISTANCE of each other
        collapse into the most frequent one.
        """
        counts: Counter = Counter()
        for line in sample:
            positions = {
                p for p in range(1, len(line))
                if line[p] == " " and line[p - 1] != " "
            }
            counts.update(positions)

        threshold = max(MIN_SHARED_LINES, len(sample) * BOUNDARY_SHARE)
        candidates = sorted(p for p, c in counts.items() if c >= threshold)

        merged: List[int] = []
        group: List[int] = []
        for p in candidates:
            if group and p - group[-1] > BOUNDARY_MERGE_DISTANCE:
                merged.append(max(group, key=lambda q: (counts[q], -q)))
                group = []
            group.append(p)
        if group:
            merged.append(max(group, key=lambda q: (counts[q], -q)))

        return merged
