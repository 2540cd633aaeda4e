from .model import Job, Manifest, TestOutcome, TestOutcomeCollection, RunnerResult
from .notebook import filter_for_viewer, merge_for_grading
from .runner import run_script
from .signing import signed_headers

__all__ = [
    "Job",
    "Manifest",
    "TestOutcome",
    "TestOutcomeCollection",
    "RunnerResult",
    "filter_for_viewer",
    "merge_for_grading",
    "run_script",
    "signed_headers",
]
