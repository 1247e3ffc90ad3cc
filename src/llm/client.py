"""Shared helpers for reading provider output.

Used by the pipeline runner to turn a stage's raw text into structured
data before validation and hand-off to the next stage.
"""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def summarize_task(task: str, max_length: int = 50) -> str:
    """Shorten a task for log lines."""
    if len(task) <= max_length:
        return task
    return task[:max_length] + "..."


def parse_llm_json_response(raw_text: str) -> Any:
    """Parse JSON from an LLM response, handling markdown code fences.

    LLMs sometimes wrap JSON in ```json ... ``` fences despite being
    told not to. This function strips those fences before parsing.

    Raises:
        json.JSONDecodeError: If the text cannot be parsed as JSON
    """
    content = raw_text.strip()

    # Strip leading markdown fence (```json or ```)
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]

    # Strip trailing fence
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]

    content = content.strip()
    return json.loads(content)


def parse_stage_output(raw_text: str) -> tuple[Any, bool]:
    """Best-effort structured parse of a stage's output.

    Returns (data, parsed). Tries the whole text, then the first fenced
    block anywhere in the text. Non-JSON output is wrapped as
    {"raw_output": text} and reported as unparsed.
    """
    try:
        return parse_llm_json_response(raw_text), True
    except json.JSONDecodeError:
        pass

    match = _FENCED_BLOCK_RE.search(raw_text)
    if match:
        try:
            return json.loads(match.group(1).strip()), True
        except json.JSONDecodeError:
            pass

    logger.debug(f"Stage output is not JSON ({len(raw_text):,} chars), wrapping raw text")
    return {"raw_output": raw_text}, False
