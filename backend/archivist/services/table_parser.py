"""
Table Parser - converts structured OCR lines into Rows keyed by column headers.

Responsibilities:
- Drop noise lines (page numbers, separators, headers, ...)
- Split each line according to the detected structure
- Type-directed extraction when a whitespace table cannot be split on gaps
- Ditto-mark / blank carry-forward across hand-copied rows
"""
import re
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

from archivist.models.extraction import (
    ColumnDefinition, DataType, DetectedStructure, ExtractionType, Row, StructureKind
)
from archivist.rules import HeuristicRules, load_rules
from archivist.services.debug_log import DebugLog
from archivist.utils.logger import get_logger
from archivist.utils.text_lines import LineFilter

logger = get_logger(__name__)

_GAP = re.compile(r"\s{2,}|\t")
_MAX_INFERRED_COLUMNS = 12
_VALUE_TYPE_SHARE = 0.6
_DEFAULT_TAKE_TOKENS = 6


# ==================== Carry-forward ====================

class CarryForward:
    """
    Ditto / blank carry-forward as an explicit state machine.

    `prev` holds the resolved cells of the most recent row that had at least
    one real (non-empty, non-ditto) cell.
    """

    def __init__(self, rules: HeuristicRules):
        self.rules = rules
        self.prev: Optional[List[str]] = None

    def resolve(self, cells: Sequence[str]) -> List[str]:
        resolved = []
        has_real_cell = False
        for i, cell in enumerate(cells):
            value = (cell or "").strip()
            if not value or self.rules.is_ditto(value):
                inherited = self.prev[i] if self.prev is not None and i < len(self.prev) else ""
                resolved.append(inherited)
            else:
                has_real_cell = True
                resolved.append(value)

        if has_real_cell:
            self.prev = resolved
        return resolved


# ==================== Column helpers ====================

def infer_data_type(header: str, rules: HeuristicRules) -> DataType:
    """Guess a column's data type from its header text."""
    lower = header.lower()
    for keyword, data_type in rules.header_types:
        if re.search(rf"\b{re.escape(keyword)}", lower):
            return DataType(data_type)
    return DataType.UNKNOWN


def resolve_columns(columns: Sequence[ColumnDefinition], rules: HeuristicRules) -> List[ColumnDefinition]:
    """Fill in unknown data types from header text; human-provided types are kept."""
    resolved = []
    for column in columns:
        if column.data_type == DataType.UNKNOWN and (column.header_exact or column.header_guess):
            column = column.model_copy(update={"data_type": infer_data_type(column.header, rules)})
        resolved.append(column)
    return resolved


def name_column_of(columns: Sequence[ColumnDefinition]) -> Optional[str]:
    for column in columns:
        if column.data_type == DataType.ENSLAVED_NAME:
            return column.header
    return None


class TableParser:

    def __init__(self, rules: Optional[HeuristicRules] = None):
        self.rules = rules or load_rules()

    # ==================== Splitting ====================

    @staticmethod
    def split_delimited(line: str, delimiter: str) -> List[str]:
        cells = [c.strip() for c in line.strip().split(delimiter)]
        if delimiter == "|":
            cells = [c for c in cells if c]
        return cells

    @staticmethod
    def split_fixed_width(line: str, boundaries: Sequence[int]) -> List[str]:
        cuts = [0] + [b for b in boundaries if 0 < b] + [max(len(line), (boundaries[-1] if boundaries else 0) + 1)]
        return [line[cuts[i]:cuts[i + 1]].strip() for i in range(len(cuts) - 1)]

    @staticmethod
    def split_gaps(line: str) -> List[str]:
        return [c for c in _GAP.split(line.strip()) if c]

    def split_typed(self, line: str, columns: Sequence[ColumnDefinition]) -> List[str]:
        """
        Peel one prefix per declared column using the pattern tied to its data type.
        A column whose pattern does not match gets an empty cell and consumes nothing.
        """
        remaining = line.strip()
        cells = []
        for i, column in enumerate(columns):
            remaining = remaining.lstrip(" ,;")
            is_last = i == len(columns) - 1
            value, remaining = self._take(remaining, column.data_type, is_last)
            cells.append(value)
        return cells

    def _take(self, text: str, data_type: DataType, is_last: bool) -> Tuple[str, str]:
        if not text:
            return "", ""

        if data_type.is_name:
            key = "name"
        elif data_type in (DataType.DATE, DataType.AGE, DataType.GENDER, DataType.COMPENSATION):
            key = data_type.value
        else:
            key = None

        if key is not None:
            for pattern in self.rules.type_patterns.get(key, ()):
                match = pattern.match(text)
                if match:
                    return match.group(1).strip(), text[match.end():]
            return "", text

        if is_last:
            return text.strip(), ""
        tokens = text.split()
        taken = tokens[:_DEFAULT_TAKE_TOKENS]
        return " ".join(taken), " ".join(tokens[_DEFAULT_TAKE_TOKENS:])

    def split_line(
            self,
            line: str,
            structure: DetectedStructure,
            columns: Sequence[ColumnDefinition]
    ) -> List[str]:
        kind = structure.kind
        if kind == StructureKind.TAB_DELIMITED:
            return self.split_delimited(line, "\t")
        if kind == StructureKind.PIPE_DELIMITED:
            return self.split_delimited(line, "|")
        if kind == StructureKind.FIXED_WIDTH:
            return self.split_fixed_width(line, structure.column_positions)

        tokens = self.split_gaps(line)
        if len(tokens) >= 2:
            return tokens
        return self.split_typed(line, columns)

    # ==================== Column inference ====================

    def infer_columns(self, lines: Sequence[str], structure: DetectedStructure) -> List[ColumnDefinition]:
        """
        Build 'Column N' definitions when no structure was declared: the widest
        sampled line sets the count, sampled values suggest each data type.
        """
        line_filter = LineFilter(self.rules)
        sample = [l for l in lines if l.strip() and line_filter.noise_reason(l) is None][:20]
        split_rows = [self.split_line(l, structure, []) if structure.kind != StructureKind.WHITESPACE_TABLE
                      else self.split_gaps(l) for l in sample]
        width = min(max((len(r) for r in split_rows), default=1), _MAX_INFERRED_COLUMNS) or 1

        columns = []
        for i in range(width):
            values = [r[i] for r in split_rows if i < len(r) and r[i]]
            columns.append(ColumnDefinition(
                position=i + 1,
                header_guess=f"Column {i + 1}",
                data_type=self._infer_value_type(values),
            ))
        return columns

    def _infer_value_type(self, values: Sequence[str]) -> DataType:
        if not values:
            return DataType.UNKNOWN
        for type_name in ("gender", "age", "date", "compensation", "enslaved-name"):
            pattern = self.rules.value_types.get(type_name)
            if pattern is None:
                continue
            hits = sum(1 for v in values if pattern.match(v.strip()))
            if hits >= len(values) * _VALUE_TYPE_SHARE:
                return DataType(type_name)
        return DataType.UNKNOWN

    # ==================== Parse ====================

    def parse(
            self,
            lines: Sequence[str],
            columns: Sequence[ColumnDefinition],
            structure: DetectedStructure,
            debug: Optional[DebugLog] = None
    ) -> List[Row]:
        """
        Parse lines into Rows.

        Args:
            lines: OCR text lines (preamble before the header is ignored)
            columns: Declared columns; inferred when empty
            structure: Output of the Structure Detector
            debug: Job debug log for skipped-line explanations

        Returns:
            Ordered list of Rows (row_index counts parsed rows from 0)
        """
        declared = bool(columns)
        columns = resolve_columns(columns, self.rules) if declared else self.infer_columns(lines, structure)
        headers = self._unique_headers(columns)
        name_column = name_column_of(columns)

        line_filter = LineFilter(self.rules, columns if declared else [])
        carry = CarryForward(self.rules)
        extraction_type = (
            ExtractionType.FIXED_WIDTH if structure.kind == StructureKind.FIXED_WIDTH else ExtractionType.TABLE
        )

        rows: List[Row] = []
        skipped: Counter = Counter()
        for line in line_filter.data_lines(lines):
            reason = line_filter.noise_reason(line)
            if reason is not None:
                if debug is not None and reason not in skipped:
                    debug.add("parse", f"Dropped line ({reason})", {"line": line[:120]})
                skipped[reason] += 1
                continue

            cells = self.split_line(line, structure, columns)
            cells = self._fit(cells, len(headers))
            cells = carry.resolve(cells)

            values: Dict[str, str] = dict(zip(headers, cells))
            filled = sum(1 for v in values.values() if v)
            rows.append(Row(
                row_index=len(rows),
                columns=values,
                confidence=filled / len(headers) if headers else 0.0,
                raw_text=line,
                extraction_type=extraction_type,
                name_column=name_column,
            ))

        if not rows and any(l.strip() for l in lines) and debug is not None:
            debug.add("parse", "No rows parsed from non-empty text", {"skipped": dict(skipped)})

        logger.info(
            f"Parsed {len(rows)} rows ({structure.kind.value}, {len(headers)} columns, "
            f"skipped {sum(skipped.values())})"
        )
        return rows

    @staticmethod
    def _fit(cells: List[str], width: int) -> List[str]:
        """Pad short rows; fold overflow cells into the last column."""
        if width <= 0:
            return []
        if len(cells) > width:
            cells = cells[:width - 1] + [" ".join(c for c in cells[width - 1:] if c)]
        return cells + [""] * (width - len(cells))

    @staticmethod
    def _unique_headers(columns: Sequence[ColumnDefinition]) -> List[str]:
        seen: Counter = Counter()
        headers = []
        for column in columns:
            header = column.header
            seen[header] += 1
            headers.append(header if seen[header] == 1 else f"{header} ({seen[header]})")
        return headers
