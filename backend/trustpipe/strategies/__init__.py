"""Verification strategies, one per task type."""

from trustpipe.strategies.base import StrategyContext, TaskHandler, VerificationStrategy
from trustpipe.strategies.company import CompanyVerificationStrategy
from trustpipe.strategies.duplicate import DuplicateApplicationStrategy
from trustpipe.strategies.quality import QualityAssessmentStrategy
from trustpipe.strategies.registry import PassthroughHandler, build_registry
from trustpipe.strategies.salary import SalaryVerificationStrategy
from trustpipe.strategies.spam import SpamDetectionStrategy

__all__ = [
    "StrategyContext",
    "TaskHandler",
    "VerificationStrategy",
    "CompanyVerificationStrategy",
    "DuplicateApplicationStrategy",
    "QualityAssessmentStrategy",
    "SalaryVerificationStrategy",
    "SpamDetectionStrategy",
    "PassthroughHandler",
    "build_registry",
]
