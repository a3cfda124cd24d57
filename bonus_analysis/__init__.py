"""Before/after analysis of a sales bonus program's effect on profit margins."""

from . import common, descriptive, mediation, models, preparation, report, robustness  # noqa: F401

__all__ = [
    "common",
    "preparation",
    "descriptive",
    "models",
    "mediation",
    "robustness",
    "report",
]
