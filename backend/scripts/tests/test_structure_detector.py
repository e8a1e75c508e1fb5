"""
Tests for the Structure Detector.
"""
from archivist.models.extraction import ColumnDefinition, StructureKind
from archivist.services.structure_detector import StructureDetector

from conftest import COMPENSATION_SCHEDULE, SCHEDULE_HEADERS


def columns_of(headers):
    return [ColumnDefinition(position=i + 1, header_exact=h) for i, h in enumerate(headers)]


def fixed_width_lines():
    people = [("Tom", "25", "M", "field hand"), ("Harry", "30", "M", "cooper"), ("Jenny", "19", "F", "cook"),
              ("Cato", "41", "M", "carpenter"), ("Bob", "12", "M", "house boy")]
    return [f"{name:<10}{age:<6}{sex:<6}{remarks}" for name, age, sex, remarks in people]


def test_tab_delimited(rules):
    lines = ["Tom\t25\tM", "Harry\t30\tM", "Jenny\t19\tF"]
    structure = StructureDetector(rules).detect(lines)

    assert structure.kind == StructureKind.TAB_DELIMITED
    assert structure.delimiter == "\t"
    assert structure.confidence == 0.9


def test_pipe_delimited(rules):
    lines = ["| Tom | 25 | M |", "| Harry | 30 | M |", "| Jenny | 19 | F |"]
    structure = StructureDetector(rules).detect(lines)

    assert structure.kind == StructureKind.PIPE_DELIMITED
    assert structure.delimiter == "|"


def test_tabs_win_over_pipes(rules):
    lines = ["Tom\t25 | M", "Harry\t30 | M"]
    assert StructureDetector(rules).detect(lines).kind == StructureKind.TAB_DELIMITED


def test_fixed_width_boundaries(rules):
    structure = StructureDetector(rules).detect(fixed_width_lines())

    assert structure.kind == StructureKind.FIXED_WIDTH
    assert 12 in structure.column_positions
    assert 17 in structure.column_positions
    # Guessed columns are less certain than declared ones
    assert structure.confidence == 0.6


def test_fixed_width_needs_a_boundary_per_declared_column(rules):
    columns = columns_of(["Name", "Age", "Sex", "Remarks", "Owner", "Value"])
    structure = StructureDetector(rules).detect(fixed_width_lines(), columns)

    assert structure.kind == StructureKind.WHITESPACE_TABLE


def test_irregular_gaps_are_whitespace_table(rules):
    lines = ["Tom  25  M", "Harriet   30   F", "Jo  4  F", "Benjamin    19    M"]
    structure = StructureDetector(rules).detect(lines)

    assert structure.kind == StructureKind.WHITESPACE_TABLE
    assert structure.confidence == 0.5


def test_single_prose_line_is_not_fixed_width(rules):
    lines = ["Richard Marsham owned 36 slaves at his death in 1713 and freed several of them in his will."]
    assert StructureDetector(rules).detect(lines).kind == StructureKind.WHITESPACE_TABLE


def test_compensation_schedule_is_whitespace_table(rules):
    structure = StructureDetector(rules).detect(COMPENSATION_SCHEDULE.splitlines(), columns_of(SCHEDULE_HEADERS))
    assert structure.kind == StructureKind.WHITESPACE_TABLE


def test_sample_skips_preamble_and_header(rules):
    sample = StructureDetector(rules).sample(COMPENSATION_SCHEDULE.splitlines(), columns_of(SCHEDULE_HEADERS))

    assert len(sample) == 11
    assert sample[0].startswith("1.")


def test_empty_text_defaults_to_whitespace_table(rules):
    structure = StructureDetector(rules).detect(["", "   ", "12"])
    assert structure.kind == StructureKind.WHITESPACE_TABLE
