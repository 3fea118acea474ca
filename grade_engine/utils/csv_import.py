"""
Grade CSV import.

Expected columns (case-insensitive, any order):
- Student Name / StudentName / Name / Student (required)
- Prelim / Preliminary / Prelim Grade
- Midterm / Midterm Grade
- Final / Final Grade
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, TextIO, Union

from grade_engine.core.errors import CsvImportError
from grade_engine.schemas.grades import GradePeriod

logger = logging.getLogger(__name__)

STUDENT_NAME_COLUMNS = ["student name", "studentname", "name", "student"]
PERIOD_COLUMNS = {
    GradePeriod.PRELIM: ["prelim", "preliminary", "prelim grade", "prelimgrade"],
    GradePeriod.MIDTERM: ["midterm", "midterm grade", "midtermgrade"],
    GradePeriod.FINAL: ["final", "final grade", "finalgrade"],
}


@dataclass
class GradeRow:
    """One student's grades from an imported sheet."""
    student_name: str
    prelim: Optional[float] = None
    midterm: Optional[float] = None
    final: Optional[float] = None

    def to_period_map(self) -> Dict[GradePeriod, Optional[float]]:
        return {
            GradePeriod.PRELIM: self.prelim,
            GradePeriod.MIDTERM: self.midterm,
            GradePeriod.FINAL: self.final,
        }


@dataclass
class CsvImportResult:
    rows: List[GradeRow] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


def _find_column(headers: Iterable[str], candidates: List[str]) -> Optional[str]:
    normalized = {header.strip().lower(): header for header in headers if header}
    for candidate in candidates:
        if candidate in normalized:
            return normalized[candidate]
    return None


def _cell(record: Dict[str, str], column: Optional[str]) -> Optional[str]:
    if column is None:
        return None
    value = (record.get(column) or "").strip()
    return value or None


def parse_grade_csv(source: Union[str, TextIO]) -> CsvImportResult:
    """
    Parse a grade sheet.

    Rows with a blank student name are skipped. A row with a non-numeric grade
    or a grade outside 0-100 is reported in ``errors`` and left out; row
    numbers count the header as row 1.

    Raises:
        CsvImportError: if the file has no header or no student name column
    """
    stream = io.StringIO(source) if isinstance(source, str) else source
    reader = csv.DictReader(stream)

    headers = reader.fieldnames
    if not headers:
        raise CsvImportError("CSV file must have a header row")

    name_column = _find_column(headers, STUDENT_NAME_COLUMNS)
    if name_column is None:
        raise CsvImportError("Missing required column: Student Name")

    period_columns = {
        period: _find_column(headers, candidates)
        for period, candidates in PERIOD_COLUMNS.items()
    }

    result = CsvImportResult()
    for row_number, record in enumerate(reader, start=2):
        student_name = _cell(record, name_column)
        if not student_name:
            continue

        values: Dict[GradePeriod, Optional[float]] = {}
        error = None
        for period, column in period_columns.items():
            raw = _cell(record, column)
            if raw is None:
                values[period] = None
                continue
            try:
                value = float(raw)
            except ValueError:
                error = f"Row {row_number}: {period.display_name} grade is not a number for student: {student_name}"
                break
            if value < 0 or value > 100:
                error = f"Row {row_number}: {period.display_name} grade must be between 0 and 100 for student: {student_name}"
                break
            values[period] = value

        if error:
            result.errors.append(error)
            continue

        result.rows.append(GradeRow(
            student_name=student_name,
            prelim=values[GradePeriod.PRELIM],
            midterm=values[GradePeriod.MIDTERM],
            final=values[GradePeriod.FINAL]
        ))

    logger.info(f"Parsed {len(result.rows)} grade rows with {len(result.errors)} errors")
    return result
