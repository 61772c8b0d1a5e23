"""Base stage interface."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from remaster.engine.context import BuildContext


class BaseStage(ABC):
    """Base interface that all pipeline stages implement."""

    name: str = "stage"

    def required_tools(self, ctx: "BuildContext") -> List[str]:
        """Native tools this stage needs for the given run."""
        return []

    @abstractmethod
    async def run(self, ctx: "BuildContext") -> None:
        """Execute the stage against the build context."""
        pass
