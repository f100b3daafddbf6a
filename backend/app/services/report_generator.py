"""Markdown task reports generated from block outputs."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import BaseModel
from pydantic import Field as PydanticField

from app.llm import DEFAULT_MODEL, TextGeneration, get_gemini_client
from app.models import Task, TokenUsage

logger = logging.getLogger(__name__)

REPORT_TEMPERATURE = 0.3
REPORT_MAX_TOKENS = 4000


class TextGenerator(Protocol):
    async def generate_text(
        self,
        prompt: str,
        model: str = ...,
        system: str | None = ...,
        temperature: float = ...,
        max_tokens: int = ...,
    ) -> TextGeneration: ...


class TaskReport(BaseModel):
    """A generated report and what it cost to produce."""

    report: str
    cost: float = 0.0
    tokens: TokenUsage = PydanticField(default_factory=TokenUsage)
    model: str = DEFAULT_MODEL
    degraded: bool = False


def build_report_prompt(task: Task, block_outputs: list[Any]) -> str:
    outputs_text = "\n\n".join(
        f"### Block {index} Output:\n{json.dumps(output, indent=2, default=str)}"
        for index, output in enumerate(block_outputs, start=1)
    )
    return f"""You are an AI assistant that creates comprehensive task reports based on execution results.

**Task Details:**
- Title: {task.title}
- Description: {task.description or 'No description provided'}

**Block Execution Outputs:**
{outputs_text}

Please create a well-structured task report that includes:

1. **TLDR**: A concise 2-3 sentence summary of what was accomplished
2. **Task Analysis**: Brief analysis of the task requirements
3. **Execution Summary**: Summary of what was executed and the key outputs
4. **Results**: Detailed breakdown of the results based on the block outputs
5. **Conclusion**: Final assessment and any recommendations

Format the report using clear markdown structure with appropriate headings and bullet points for readability."""


def placeholder_report(task: Task) -> str:
    return (
        f"# Task Report: {task.title}\n\n"
        "## TLDR\n"
        "Task execution completed but report generation failed.\n"
    )


def failure_report(task: Task, error_message: str, timestamp: str | None = None) -> str:
    """Report stored on a task whose worker execution failed."""
    timestamp = timestamp or datetime.now(timezone.utc).isoformat()
    return f"""# Task Report: {task.title}

## TLDR
Task execution failed due to an error during worker execution.

## Error Details
{error_message or 'Unknown error occurred'}

## Task Information
- **Title**: {task.title}
- **Description**: {task.description or 'No description provided'}
- **Status**: Failed
- **Timestamp**: {timestamp}
"""


class ReportGenerator:
    """Produces task reports, degrading to a placeholder when the LLM fails."""

    def __init__(self, client: TextGenerator | None = None, model: str = DEFAULT_MODEL):
        self._client = client
        self.model = model

    def _get_client(self) -> TextGenerator | None:
        return self._client or get_gemini_client()

    async def generate(
        self, task: Task, block_outputs: list[Any], request_id: str = ""
    ) -> TaskReport:
        """Generate a report; never raises for LLM failures."""
        client = self._get_client()
        if client is None:
            logger.warning(f"[{request_id}] No LLM configured, using placeholder report")
            return TaskReport(report=placeholder_report(task), model=self.model, degraded=True)

        try:
            generation = await client.generate_text(
                prompt=build_report_prompt(task, block_outputs),
                model=self.model,
                temperature=REPORT_TEMPERATURE,
                max_tokens=REPORT_MAX_TOKENS,
            )
        except Exception as e:
            logger.error(f"[{request_id}] Error generating task report: {e}")
            return TaskReport(report=placeholder_report(task), model=self.model, degraded=True)

        logger.info(
            f"[{request_id}] Task report generated: {generation.usage.total_tokens} tokens, "
            f"cost ${generation.cost:.6f}"
        )
        return TaskReport(
            report=generation.text,
            cost=generation.cost,
            tokens=TokenUsage(
                prompt=generation.usage.prompt_tokens,
                completion=generation.usage.completion_tokens,
                total=generation.usage.total_tokens,
            ),
            model=generation.model,
        )
