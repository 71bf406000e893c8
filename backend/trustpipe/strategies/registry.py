"""Task type to handler map."""

from types import MappingProxyType
from typing import Mapping

import structlog

from trustpipe.engines.policy import TaskType
from trustpipe.errors import ConfigurationError
from trustpipe.strategies.base import StrategyContext, TaskHandler
from trustpipe.strategies.company import CompanyVerificationStrategy
from trustpipe.strategies.duplicate import DuplicateApplicationStrategy
from trustpipe.strategies.quality import QualityAssessmentStrategy
from trustpipe.strategies.salary import SalaryVerificationStrategy
from trustpipe.strategies.spam import SpamDetectionStrategy

logger = structlog.get_logger()


class PassthroughHandler:
    """Generic ``quality_tasks`` messages: acknowledged and echoed back."""

    async def handle(self, payload: dict, request_id: str) -> dict:
        logger.info("Processing generic quality task", request_id=request_id)
        return {"result": "processed", "data": payload}


def build_registry(context: StrategyContext) -> Mapping[TaskType, TaskHandler]:
    """One handler per TaskType; raises ConfigurationError if any is missing."""
    registry = {
        TaskType.COMPANY_VERIFICATION: CompanyVerificationStrategy(context),
        TaskType.SPAM_CHECK: SpamDetectionStrategy(context),
        TaskType.SALARY_VERIFICATION: SalaryVerificationStrategy(context),
        TaskType.DUPLICATE_CHECK: DuplicateApplicationStrategy(context),
        TaskType.QUALITY_ASSESSMENT: QualityAssessmentStrategy(context),
        TaskType.QUALITY_TASKS: PassthroughHandler(),
    }
    check_registry(registry)
    return MappingProxyType(registry)


def check_registry(registry: Mapping[TaskType, TaskHandler]) -> None:
    missing = set(TaskType) - set(registry)
    if missing:
        raise ConfigurationError(
            f"No handler registered for {sorted(t.value for t in missing)}"
        )
