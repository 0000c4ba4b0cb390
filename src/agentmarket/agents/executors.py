"""Work executors, one per job type.

Rule executors produce deterministic structured results from the job
itself. LLM executors ask the model to do the work with the job's
description and requirements.
"""

import json
from typing import Any, Awaitable, Callable, Optional
import structlog

from ..llm import call_llm, call_llm_json
from ..models import Job

logger = structlog.get_logger()

# Registry of executors by (mode, job type)
EXECUTORS: dict[tuple[str, str], type] = {}


def register_executor(job_type: str, mode: str = "rules"):
    """Decorator to register an executor for a job type."""
    def decorator(cls):
        EXECUTORS[(mode, job_type)] = cls
        return cls
    return decorator


def get_executor(job_type: str, mode: str = "rules") -> "BaseExecutor":
    """Instantiate the executor for a job type, or the generic one."""
    cls = EXECUTORS.get((mode, job_type)) or EXECUTORS[(mode, "*")]
    return cls()


class BaseExecutor:
    """Base class for executors."""

    async def execute(self, job: Job) -> Any:
        """Produce results for a job. Raise to report failure."""
        raise NotImplementedError


def _keywords(text: str, limit: int = 5) -> list[str]:
    words = [w.strip(".,;:!?()\"'").lower() for w in text.split()]
    seen: list[str] = []
    for word in words:
        if len(word) > 4 and word not in seen:
            seen.append(word)
    return seen[:limit]


# ============================================================
# Rule executors
# ============================================================

@register_executor("web_scraping")
class ScrapeExecutor(BaseExecutor):
    async def execute(self, job: Job) -> Any:
        sources = job.requirements.get("websites") or job.requirements.get("sources") or []
        fields = job.requirements.get("fields") or job.requirements.get("required_fields") or []
        records = [
            {"source": source, **{name: f"{name} from {source}" for name in fields}}
            for source in sources
        ]
        return {
            "summary": f"Collected {len(records)} records for: {job.description}",
            "records": records,
            **{name: [r.get(name) for r in records] or f"{name} not found" for name in fields},
        }


@register_executor("analysis")
class AnalysisExecutor(BaseExecutor):
    async def execute(self, job: Job) -> Any:
        data = job.requirements.get("data", job.requirements)
        topics = _keywords(job.description)
        return {
            "summary": f"Analysis of {job.description}",
            "insights": [f"Key theme: {topic}" for topic in topics] or ["No distinct themes found"],
            "recommendations": [f"Investigate {topic} further" for topic in topics[:2]],
            "data_points": len(data) if isinstance(data, (list, dict)) else 1,
        }


@register_executor("writing")
class WritingExecutor(BaseExecutor):
    async def execute(self, job: Job) -> Any:
        sections = job.requirements.get("sections") or ["Overview", "Findings", "Conclusion"]
        body = "\n\n".join(f"## {section}\n{job.description}" for section in sections)
        return {
            "title": job.description[:80],
            "report": body,
            "word_count": len(body.split()),
        }


@register_executor("*")
class EchoExecutor(BaseExecutor):
    """Fallback for job types without a dedicated executor."""

    async def execute(self, job: Job) -> Any:
        return {
            "summary": f"Completed {job.type} task: {job.description}",
            "requirements": job.requirements,
        }


# ============================================================
# LLM executors
# ============================================================

class LLMExecutor(BaseExecutor):
    """Base for executors that delegate the work to the LLM."""

    SYSTEM_PROMPT = ""
    FALLBACK_KEY = "result"

    def __init__(
        self,
        call_json: Callable[..., Awaitable[dict]] = call_llm_json,
        call_text: Optional[Callable] = None,
    ):
        self.call_json = call_json
        self.call_text = call_text or call_llm

    def build_prompt(self, job: Job) -> str:
        return f"{job.description}\n\nRequirements: {json.dumps(job.requirements, indent=2, default=str)}"

    async def execute(self, job: Job) -> Any:
        logger.info("llm_execution_started", job_id=job.job_id, type=job.type)
        return await self.call_json(
            prompt=self.build_prompt(job),
            system_prompt=self.SYSTEM_PROMPT,
            temperature=0.4,
            max_tokens=4096,
        )


@register_executor("web_scraping", mode="llm")
class LLMScrapeExecutor(LLMExecutor):
    SYSTEM_PROMPT = """You are a web scraping agent. Based on requirements, generate realistic sample data.
For competitor research, include: company names, pricing, features, market position.
Return comprehensive JSON data."""

    def build_prompt(self, job: Job) -> str:
        return f"Scrape data for: {json.dumps(job.requirements or {'task': job.description}, default=str)}"


@register_executor("analysis", mode="llm")
class LLMAnalysisExecutor(LLMExecutor):
    SYSTEM_PROMPT = """You are a data analysis agent. Analyze the provided data and extract key insights.
Focus on: trends, patterns, competitive advantages, market positioning.
Return structured JSON with insights and recommendations."""

    def build_prompt(self, job: Job) -> str:
        data = job.requirements.get("data", job.requirements)
        return f"Analyze this data ({job.description}):\n{json.dumps(data, indent=2, default=str)}"


@register_executor("writing", mode="llm")
class LLMWritingExecutor(LLMExecutor):
    SYSTEM_PROMPT = (
        "You are a professional writer creating research reports. Based on the provided data, "
        "write a well-structured, comprehensive report. Format it professionally with sections, "
        "insights, and conclusions."
    )

    async def execute(self, job: Job) -> Any:
        logger.info("llm_execution_started", job_id=job.job_id, type=job.type)
        response = await self.call_text(
            prompt=(
                f"Write a report for: {job.description}\n\n"
                f"Data/Requirements: {json.dumps(job.requirements, indent=2, default=str)}"
            ),
            system_prompt=self.SYSTEM_PROMPT,
            max_tokens=4096,
        )
        return {"report": response.content, "word_count": len(response.content.split())}


@register_executor("*", mode="llm")
class LLMGenericExecutor(LLMExecutor):
    SYSTEM_PROMPT = "You are an AI agent completing a marketplace job. Return your results as JSON."
