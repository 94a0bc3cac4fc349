"""
Compensating actions for multi-step workflows

Each mutating step records its own inverse, built from the result of the
step. When a later step fails, the recorded inverses run in reverse order
and the original exception is re-raised.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional


@dataclass
class CompensatingAction:
    description: str
    undo: Callable[[], Any]


class CompensatingWorkflow:
    """Run steps and undo the completed ones if the workflow fails"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.actions: List[CompensatingAction] = []
        self.failed_compensations: List[str] = []

    def run(self, description: str, action: Callable[[], Any],
            undo: Optional[Callable[[Any], Any]] = None) -> Any:
        """Execute action and, on success, record undo(result) as its inverse"""
        self.logger.info(f"▶️  {description}")
        result = action()
        if undo is not None:
            self.actions.append(CompensatingAction(description, lambda: undo(result)))
        return result

    def discard(self, description: str):
        """Forget the inverse of a step that no longer needs undoing"""
        self.actions = [a for a in self.actions if a.description != description]

    def commit(self):
        self.actions = []

    def rollback(self):
        """Run recorded inverses newest first, continuing past failures"""
        while self.actions:
            action = self.actions.pop()
            self.logger.warning(f"↩️  Reverting: {action.description}")
            try:
                action.undo()
            except Exception as e:
                self.logger.error(f"❌ Failed to revert '{action.description}': {e}")
                self.failed_compensations.append(action.description)

        if self.failed_compensations:
            self.logger.error("⚠️  Manual cleanup needed for: " + ", ".join(self.failed_compensations))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is not None:
            self.logger.error(f"Workflow failed: {exc_value}")
            self.rollback()
        return False
