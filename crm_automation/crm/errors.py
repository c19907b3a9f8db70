from __future__ import annotations

from crm_automation.crm.schemas import SaveResult


class DependencyFailure(Exception):
    """A collaborator call (bulk write, notification) failed for the whole batch."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class DmlError(DependencyFailure):
    """Raised by all-or-none DML when at least one record was rejected."""

    def __init__(self, operation: str, results: list[SaveResult]) -> None:
        self.results = results
        failed = [result for result in results if not result.success]
        messages = sorted({error for result in failed for error in result.errors})
        super().__init__(operation, f"{len(failed)} of {len(results)} records rejected: {'; '.join(messages)}")
