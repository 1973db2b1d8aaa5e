"""Single-call LLM agents of the Text2SQL pipeline."""
from .base import LLMAgent
from .error_handler import ErrorHandler
from .orchestrator import OrchestratorAgent, OrchestratorResult
from .question_expansion import QuestionExpansionAgent
from .response_generator import ResponseGenerator
from .result_validator import ResultValidatorAgent, ValidationResult
from .sql_generation import SqlGenerationAgent, SqlGenerationError, SqlGenerationResult
from .summary import SummaryAgent

__all__ = [
    "ErrorHandler",
    "LLMAgent",
    "OrchestratorAgent",
    "OrchestratorResult",
    "QuestionExpansionAgent",
    "ResponseGenerator",
    "ResultValidatorAgent",
    "SqlGenerationAgent",
    "SqlGenerationError",
    "SqlGenerationResult",
    "SummaryAgent",
    "ValidationResult",
]
