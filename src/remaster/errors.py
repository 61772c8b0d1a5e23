"""Error kinds raised by the remastering pipeline."""

from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from remaster.models.artifacts import CheckResult


class RemasterError(Exception):
    """Base class for all pipeline errors.

    ``stage`` names the pipeline stage that failed. Stages may leave it unset;
    the pipeline fills it in before re-raising.
    """

    kind = "RemasterError"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.kind}: {self.message}"
        return f"{self.kind}: {self.message}"


class MissingDependency(RemasterError):
    """A required native tool is not available."""

    kind = "MissingDependency"


class ExtractionFailure(RemasterError):
    """The source image is unreadable or structurally unexpected."""

    kind = "ExtractionFailure"


class LayerDiscoveryFailure(RemasterError):
    """No usable filesystem container was found."""

    kind = "LayerDiscoveryFailure"


class ValidationFailure(RemasterError):
    """One or more checklist assertions failed."""

    kind = "ValidationFailure"

    def __init__(self, failures: List["CheckResult"], stage: Optional[str] = None):
        names = ", ".join(f.name for f in failures)
        super().__init__(f"failed checks: {names}", stage=stage)
        self.failures = failures


class BuildFailure(RemasterError):
    """Repacking or image reconstruction failed."""

    kind = "BuildFailure"


class BestEffortFailure(RemasterError):
    """A non-boot-critical side effect failed. Recorded, never fatal."""

    kind = "BestEffortFailure"
