"""
Shared grading scales.

The letter ladder is the single source for per-entry letter grades, aggregate
letter grades and curve distributions.
"""

from typing import Dict, List, Optional, Tuple

# Ordered top-down; the first threshold the value meets wins.
LETTER_GRADE_SCALE: List[Tuple[float, str]] = [
    (97.0, "A+"),
    (93.0, "A"),
    (90.0, "A-"),
    (87.0, "B+"),
    (83.0, "B"),
    (80.0, "B-"),
    (77.0, "C+"),
    (73.0, "C"),
    (70.0, "C-"),
    (67.0, "D+"),
    (65.0, "D"),
]
FAILING_LETTER = "F"
INCOMPLETE_LETTER = "INC"

# Bands used when reporting a cohort's distribution
DISTRIBUTION_BANDS: List[Tuple[str, float]] = [
    ("A (90-100)", 90.0),
    ("B (80-89)", 80.0),
    ("C (70-79)", 70.0),
    ("D (60-69)", 60.0),
    ("F (0-59)", float("-inf")),
]


def letter_grade_for(value: Optional[float]) -> str:
    """Map a percentage to its letter grade, or INC when undefined."""
    if value is None:
        return INCOMPLETE_LETTER
    for threshold, letter in LETTER_GRADE_SCALE:
        if value >= threshold:
            return letter
    return FAILING_LETTER


def grade_distribution(values: List[float]) -> Dict[str, int]:
    distribution = {label: 0 for label, _ in DISTRIBUTION_BANDS}
    for value in values:
        for label, floor in DISTRIBUTION_BANDS:
            if value >= floor:
                distribution[label] += 1
                break
    return distribution
