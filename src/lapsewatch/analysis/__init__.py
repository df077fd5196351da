"""Pure analysis stages: normalize, detect changes, roll up, classify, find ghosts."""

from lapsewatch.analysis.changes import ChangeDetector, diff_records
from lapsewatch.analysis.classifier import alerting_view, classify, classify_all, summarize
from lapsewatch.analysis.ghosts import GhostAccountDetector, GhostVerdict
from lapsewatch.analysis.normalizer import normalize_record
from lapsewatch.analysis.rollup import ExtensionMatchPolicy, roll_up

__all__ = [
    "ChangeDetector",
    "ExtensionMatchPolicy",
    "GhostAccountDetector",
    "GhostVerdict",
    "alerting_view",
    "classify",
    "classify_all",
    "diff_records",
    "normalize_record",
    "roll_up",
    "summarize",
]
