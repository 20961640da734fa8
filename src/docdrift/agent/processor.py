"""Task processors for agent work.

Each task type builds a prompt, calls the LLM, and validates the JSON reply
against a pydantic model. A reply that fails to parse or validate is retried
with a JSON-only instruction before the task is reported as failed.
"""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from docdrift.agent.prompts import (
    JSON_ONLY_SUFFIX,
    MAX_EXTRACTED_CLAIMS,
    SEMANTIC_CLAIM_TYPES,
    ClassificationOutput,
    ExtractOutput,
    FixOutput,
    PostCheckOutput,
    VerifyOutput,
    build_classification_prompt,
    build_extract_prompt,
    build_feedback_prompt,
    build_fix_prompt,
    build_post_check_prompt,
    build_verify_prompt,
)
from docdrift.config import DocDriftConfig
from docdrift.errors import AgentTaskFailure
from docdrift.learning.feedback import FeedbackInterpretation
from docdrift.llm import LLMResponse, call_llm, parse_json_response
from docdrift.models import AgentTask, TaskType

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

LLMCall = Callable[..., Awaitable[Optional[LLMResponse]]]

INPUT_COST_PER_MILLION = 3.0
OUTPUT_COST_PER_MILLION = 15.0
NO_EVIDENCE_VERIFIED_PENALTY = 0.3
NO_EVIDENCE_VERIFIED_FLOOR = 0.2


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    cost = (input_tokens / 1_000_000) * INPUT_COST_PER_MILLION
    cost += (output_tokens / 1_000_000) * OUTPUT_COST_PER_MILLION
    return round(cost, 6)


def response_metadata(response: LLMResponse, started: float) -> dict[str, Any]:
    return {
        "duration_ms": int((time.monotonic() - started) * 1000),
        "model_used": response.model,
        "tokens_used": response.total_tokens,
        "cost_usd": estimate_cost(response.input_tokens, response.output_tokens),
    }


def post_process_verification(output: VerifyOutput) -> dict[str, Any]:
    """Drift needs evidence; verified without evidence is trusted less."""
    data = output.model_dump()
    if not output.evidence_files:
        if output.verdict == "drifted":
            data["verdict"] = "uncertain"
            data["severity"] = None
        elif output.verdict == "verified":
            data["confidence"] = max(NO_EVIDENCE_VERIFIED_FLOOR, output.confidence - NO_EVIDENCE_VERIFIED_PENALTY)
    return data


class TaskProcessor:
    """Runs one agent task through the LLM."""

    def __init__(self, config: DocDriftConfig, llm_call: LLMCall = call_llm):
        self.config = config
        self.llm_call = llm_call
        self.handlers: dict[str, Callable[[AgentTask], Awaitable[dict[str, Any]]]] = {
            TaskType.VERIFICATION.value: self.process_verification,
            TaskType.CLAIM_CLASSIFICATION.value: self.process_classification,
            TaskType.FIX_GENERATION.value: self.process_fix_generation,
            TaskType.POST_CHECK.value: self.process_post_check,
            TaskType.FEEDBACK_INTERPRETATION.value: self.process_feedback_interpretation,
            TaskType.CLAIM_EXTRACTION.value: self.process_claim_extraction,
        }

    async def process(self, task: AgentTask) -> dict[str, Any]:
        """Process a task and return its result payload.

        Raises:
            AgentTaskFailure: If the LLM never produced a valid response
        """
        handler = self.handlers.get(task.type)
        if handler is None:
            raise AgentTaskFailure(f"Unsupported task type: {task.type}", task_id=task.id, retryable=False)
        return await handler(task)

    async def call_with_retry(
        self,
        task: AgentTask,
        system: str,
        prompt: str,
        schema: type[T],
        model_tier: str = "deep"
    ) -> tuple[T, dict[str, Any]]:
        """Call the LLM and validate, retrying with the JSON-only suffix.

        Returns:
            (validated output, metadata)

        Raises:
            AgentTaskFailure: After ``retry_per_call_max`` unusable responses
        """
        llm_config = getattr(self.config.llm, model_tier).model_dump()
        attempts = self.config.agent.retry_per_call_max
        last_error = "no response"

        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            suffix = JSON_ONLY_SUFFIX if attempt > 1 else ""
            response = await self.llm_call(
                prompt + suffix,
                task_type=model_tier,
                timeout=float(self.config.agent.timeout_seconds),
                config_override=llm_config,
                system=system,
            )
            if response is None:
                last_error = "LLM call failed"
                logger.warning(f"Task {task.id} ({task.type}): LLM call failed on attempt {attempt}/{attempts}")
                continue

            parsed = parse_json_response(response.text)
            if parsed is None:
                last_error = "invalid JSON"
                logger.warning(f"Task {task.id} ({task.type}): invalid JSON on attempt {attempt}/{attempts}")
                continue

            try:
                output = schema.model_validate(parsed)
            except ValidationError as e:
                last_error = f"schema validation failed: {e.error_count()} errors"
                logger.warning(f"Task {task.id} ({task.type}): {last_error} on attempt {attempt}/{attempts}")
                continue

            return output, response_metadata(response, started)

        raise AgentTaskFailure(
            f"{task.type} produced no valid response after {attempts} attempts: {last_error}",
            task_id=task.id,
        )

    async def process_verification(self, task: AgentTask) -> dict[str, Any]:
        system, prompt = build_verify_prompt(task.payload)
        output, metadata = await self.call_with_retry(task, system, prompt, VerifyOutput, "deep")
        data = post_process_verification(output)
        return {
            "type": TaskType.VERIFICATION.value,
            "verification_path": task.payload.get("verification_path"),
            **data,
            "metadata": metadata,
        }

    async def process_classification(self, task: AgentTask) -> dict[str, Any]:
        system, prompt = build_classification_prompt(task.payload)
        output, metadata = await self.call_with_retry(task, system, prompt, ClassificationOutput, "small")
        max_files = task.payload.get("max_files") or self.config.mapping.max_agent_files_per_claim
        selected = sorted(output.selected, key=lambda s: -s.confidence)[:max_files]
        return {
            "type": TaskType.CLAIM_CLASSIFICATION.value,
            "selected": [s.model_dump() for s in selected],
            "reasoning": output.reasoning,
            "metadata": metadata,
        }

    async def process_fix_generation(self, task: AgentTask) -> dict[str, Any]:
        system, prompt = build_fix_prompt(task.payload)
        output, metadata = await self.call_with_retry(task, system, prompt, FixOutput, "deep")

        fix = output.suggested_fix.model_dump()
        original = (task.payload.get("finding") or {}).get("claim_text", "")
        if fix["new_text"] == original:
            logger.warning(f"Task {task.id}: discarding fix identical to the original claim text")
            fix = None
        else:
            max_len = max(len(original) * 5, 500)
            if len(fix["new_text"]) > max_len:
                fix["new_text"] = fix["new_text"][:max_len] + " [truncated]"

        return {"type": TaskType.FIX_GENERATION.value, "suggested_fix": fix, "metadata": metadata}

    async def process_post_check(self, task: AgentTask) -> dict[str, Any]:
        system, prompt = build_post_check_prompt(task.payload)
        output, metadata = await self.call_with_retry(task, system, prompt, PostCheckOutput, "small")
        return {"type": TaskType.POST_CHECK.value, **output.model_dump(), "metadata": metadata}

    async def process_feedback_interpretation(self, task: AgentTask) -> dict[str, Any]:
        system, prompt = build_feedback_prompt(task.payload)
        output, metadata = await self.call_with_retry(task, system, prompt, FeedbackInterpretation, "small")
        return {"type": TaskType.FEEDBACK_INTERPRETATION.value, **output.model_dump(), "metadata": metadata}

    async def process_claim_extraction(self, task: AgentTask) -> dict[str, Any]:
        system, prompt = build_extract_prompt(task.payload)
        output, metadata = await self.call_with_retry(task, system, prompt, ExtractOutput, "deep")

        claims = [c for c in output.claims if c.claim_type in SEMANTIC_CLAIM_TYPES]
        if len(claims) > MAX_EXTRACTED_CLAIMS:
            claims = sorted(claims, key=lambda c: -c.confidence)[:MAX_EXTRACTED_CLAIMS]

        return {
            "type": TaskType.CLAIM_EXTRACTION.value,
            "claims": [c.model_dump() for c in claims],
            "metadata": metadata,
        }


async def execute_task(queue: Any, processor: TaskProcessor, task: AgentTask, timeout_sec: int) -> Optional[dict[str, Any]]:
    """Run a claimed task, then complete or fail it on the queue.

    Returns:
        The result if the task completed under this worker's lease, else None
    """
    try:
        logger.info(f"Processing agent task {task.id}: {task.type}")
        try:
            result = await asyncio.wait_for(processor.process(task), timeout=timeout_sec)
        except asyncio.TimeoutError:
            raise TimeoutError(f"Task timed out after {timeout_sec} seconds")

    except Exception as e:
        logger.error(f"Agent task {task.id} failed: {e}", exc_info=True)
        error_detail = {
            "error_type": type(e).__name__,
            "error_message": str(e),
        }
        await queue.fail(task.id, str(e), error_detail)
        return None

    if not await queue.complete(task.id, result):
        return None
    return result
