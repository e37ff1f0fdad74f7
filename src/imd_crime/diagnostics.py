"""
Pipeline condition taxonomy and the diagnostics summary.

KeyMismatch, IncompleteRecord, ReferenceMismatch and DisconnectedArea are
recoverable: components record them on a Diagnostics object and carry on
with reduced coverage. FitFailure is raised for the one regression that
failed and never aborts the rest of the run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence


class PipelineCondition(Exception):
    """Base class for conditions reported by the pipeline."""

    def to_dict(self) -> Dict[str, Any]:
        return {"condition": type(self).__name__, "message": str(self)}


class KeyMismatch(PipelineCondition):
    """A source has area codes that do not line up with the geometry source."""

    def __init__(self, source: str, n_unmatched: int, n_missing: int, examples: Sequence[str] = ()):
        self.source = source
        self.n_unmatched = n_unmatched
        self.n_missing = n_missing
        self.examples = list(examples)[:5]
        super().__init__(
            f"{source}: {n_unmatched} keys absent from the area set, "
            f"{n_missing} areas absent from the source"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "source": self.source,
            "n_unmatched": self.n_unmatched,
            "n_missing": self.n_missing,
            "examples": self.examples,
        }


class IncompleteRecord(PipelineCondition):
    """An area is missing one or more required domain sub-scores."""

    def __init__(self, area_id: Optional[str], missing_domains: Sequence[str]):
        self.area_id = area_id
        self.missing_domains = list(missing_domains)
        super().__init__(f"Area {area_id} missing sub-scores: {', '.join(self.missing_domains)}")


class ReferenceMismatch(PipelineCondition):
    """Recomputed index values disagree with the published reference after rounding."""

    def __init__(self, column: str, n_compared: int, n_mismatch: int, n_last_place: int):
        self.column = column
        self.n_compared = n_compared
        self.n_mismatch = n_mismatch
        self.n_last_place = n_last_place
        self.rate = n_mismatch / n_compared if n_compared else 0.0
        super().__init__(
            f"{column}: {n_mismatch}/{n_compared} ({self.rate:.2%}) differ from the "
            f"published value, {n_last_place} by one unit in the last place"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "column": self.column,
            "n_compared": self.n_compared,
            "n_mismatch": self.n_mismatch,
            "n_last_place": self.n_last_place,
            "rate": self.rate,
        }


class DisconnectedArea(PipelineCondition):
    """An area has no contiguous neighbours."""

    def __init__(self, area_id: str):
        self.area_id = area_id
        super().__init__(f"Area {area_id} has no contiguous neighbours")


class FitFailure(PipelineCondition):
    """The spatial error model could not be estimated for one outcome/predictor pair."""

    def __init__(self, outcome: str, predictor: str, reason: str):
        self.outcome = outcome
        self.predictor = predictor
        self.reason = reason
        super().__init__(f"Fit failed for {outcome} ~ {predictor}: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            **super().to_dict(),
            "outcome": self.outcome,
            "predictor": self.predictor,
            "reason": self.reason,
        }


@dataclass
class Diagnostics:
    """Non-fatal conditions accumulated over one pipeline run."""

    key_mismatches: List[KeyMismatch] = field(default_factory=list)
    incomplete_areas: List[str] = field(default_factory=list)
    reference_mismatches: List[ReferenceMismatch] = field(default_factory=list)
    disconnected_areas: List[str] = field(default_factory=list)
    dropped_events: Dict[str, int] = field(default_factory=dict)
    fit_failures: List[FitFailure] = field(default_factory=list)

    def record_key_mismatch(self, condition: KeyMismatch) -> None:
        self.key_mismatches.append(condition)

    def record_incomplete(self, area_ids: Sequence[str]) -> None:
        seen = set(self.incomplete_areas)
        self.incomplete_areas.extend(a for a in area_ids if a not in seen)

    def record_reference_mismatch(self, condition: ReferenceMismatch) -> None:
        self.reference_mismatches.append(condition)

    def record_disconnected(self, area_ids: Sequence[str]) -> None:
        seen = set(self.disconnected_areas)
        self.disconnected_areas.extend(a for a in area_ids if a not in seen)

    def record_dropped_events(self, category: str, n: int) -> None:
        self.dropped_events[category] = self.dropped_events.get(category, 0) + int(n)

    def record_fit_failure(self, condition: FitFailure) -> None:
        self.fit_failures.append(condition)

    @property
    def n_dropped_events(self) -> int:
        return sum(self.dropped_events.values())

    def to_dict(self) -> Dict[str, Any]:
        """Summary suitable for JSON output."""
        return {
            "key_mismatches": [c.to_dict() for c in self.key_mismatches],
            "n_incomplete_areas": len(self.incomplete_areas),
            "incomplete_areas": list(self.incomplete_areas),
            "reference_mismatches": [c.to_dict() for c in self.reference_mismatches],
            "n_disconnected_areas": len(self.disconnected_areas),
            "disconnected_areas": list(self.disconnected_areas),
            "dropped_events": dict(self.dropped_events),
            "n_dropped_events": self.n_dropped_events,
            "fit_failures": [c.to_dict() for c in self.fit_failures],
        }
