"""Checks that executed SQL actually answers the question."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..config import agent_config
from ..llm_providers import LLMProviderError
from ..prompts import build_result_validator_prompt
from .base import LLMAgent

logger = logging.getLogger(__name__)

_IS_VALID = re.compile(r"IS_VALID:\s*(true|false)", re.IGNORECASE)
_SEVERITY = re.compile(r"SEVERITY:\s*(ERROR|WARN)", re.IGNORECASE)
_VIOLATIONS = re.compile(r"VIOLATIONS:\s*(.*)", re.IGNORECASE)
_REASON = re.compile(r"REASON:\s*(.*)", re.IGNORECASE)
_EVALUATION = re.compile(r"EVALUATION:\s*([\s\S]*)", re.IGNORECASE)


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    severity: Optional[str] = None
    violations: List[str] = field(default_factory=list)
    reason: str = ""
    evaluation: str = ""

    @property
    def feedback(self) -> str:
        """Text handed back to the SQL generator as ``last_error``."""

        details = ", ".join(self.violations)
        return f"Result validation failed: {self.reason}" + (f" ({details})" if details else "")


def parse_validation(content: str) -> ValidationResult:
    valid_match = _IS_VALID.search(content)
    severity_match = _SEVERITY.search(content)
    violations_match = _VIOLATIONS.search(content)
    reason_match = _REASON.search(content)
    evaluation_match = _EVALUATION.search(content)

    severity = severity_match.group(1).upper() if severity_match else None
    is_valid = (valid_match is None or valid_match.group(1).lower() == "true") and severity != "ERROR"

    violations: List[str] = []
    if violations_match:
        raw = violations_match.group(1).strip().strip("[]")
        violations = [v.strip() for v in raw.split(",") if v.strip() and v.strip().lower() not in ("none", "null")]

    return ValidationResult(
        is_valid=is_valid,
        severity=severity,
        violations=violations,
        reason=reason_match.group(1).strip() if reason_match else "",
        evaluation=evaluation_match.group(1).strip() if evaluation_match else "",
    )


class ResultValidatorAgent(LLMAgent):
    stage = "result_validation"

    async def validate(
        self,
        query: str,
        sql: str,
        results: Sequence[Dict[str, Any]],
        expected_type: str = "QUERY",
        *,
        original_query: Optional[str] = None,
    ) -> ValidationResult:
        preview = json.dumps(list(results), ensure_ascii=False, default=str)[: agent_config.preview_validation]
        prompt = build_result_validator_prompt(
            original_query=original_query or query,
            canonical_question=query,
            sql=sql,
            results_count=len(results),
            results_preview=preview,
            expected_type=expected_type,
        )
        try:
            content = await self._complete(
                prompt,
                temperature=agent_config.temperature_precise,
                max_tokens=agent_config.max_tokens_validation,
            )
        except LLMProviderError as e:
            logger.error("Result validation failed: %s", e)
            return ValidationResult(
                is_valid=False,
                severity="ERROR",
                violations=["Validation error"],
                reason=f"Validation error: {e}",
            )

        result = parse_validation(content)
        if not result.is_valid:
            logger.warning("Result rejected: %s %s", result.reason, result.violations)
        elif result.severity == "WARN":
            logger.info("Result accepted with warning: %s", result.reason)
        return result
