"""Prompt profiles and the four research roles built on the inference router."""

import json
from datetime import datetime, timezone
from typing import Dict, Optional

from pydantic import ValidationError

from .router import InferenceRouter, Intent
from .schemas import Plan, Step, Verification
from .tools import WebTools


DEFAULT_RETRY_FEEDBACK = "Research needs more specific data."

PLANNER_PROMPT = """
SYSTEM: You are an expert Research Planner.
GOAL: {topic}
CONTEXT: Current time is {now}

INSTRUCTION: Break this goal into 3-5 focused steps.
- Use 'web_search' for finding facts (KEYWORD-BASED queries)
- Use 'scrape_url' only with specific URLs
- Use 'analyze_content' to reason over what earlier steps found
- Keep steps focused and actionable

FEEDBACK FROM PREVIOUS ATTEMPT: {feedback}

OUTPUT FORMAT (JSON):
{{
    "reasoning": "string",
    "steps": [
        {{
            "step_id": "step_1",
            "description": "string",
            "tool": "web_search",
            "params": {{ "query": "string" }},
            "dependencies": [],
            "uncertainty_level": "low"
        }}
    ]
}}
"""

EXTRACTION_PROMPT = """
SYSTEM: Extract specific information from this content.
TASK: {description}
SOURCE: {source}

Extract key facts with sources. Output NOT_FOUND if unavailable.
"""

ANALYSIS_PROMPT = """
SYSTEM: Expert Research Analyst.
TASK: {description}

CONTEXT: {context}

Provide evidence-backed analysis with specific data points.
Be comprehensive but concise.
"""

VERIFIER_PROMPT = """
SYSTEM: Quality Verifier for research outputs.

ORIGINAL GOAL: {topic}

PLAN REASONING: {reasoning}

FINDINGS:
{findings}

VERIFICATION:
1. Does the research answer the goal?
2. Are there specific facts and data?
3. Is there enough substance?

PASS if the research provides useful, specific information.
Only REJECT if truly empty or irrelevant.

OUTPUT (JSON):
{{
    "status": "pass",
    "quality_score": 75,
    "feedback": "string if not pass",
    "final_report": "Comprehensive markdown report if pass, starting with an Executive Summary"
}}
"""

REPORT_PROMPT = """
SYSTEM: Expert report writer. Create a professional research report.

TOPIC: {topic}

DATA:
{findings}

Generate a comprehensive markdown report:
- Executive Summary
- Key Findings (with data)
- Analysis
- Recommendations
- Conclusion

Use the actual data. Be specific and professional.
"""


class AgentError(Exception):
    pass


class PlanningError(AgentError):
    pass


class VerificationError(AgentError):
    pass


class ReportError(AgentError):
    pass


def findings_json(findings: Dict[str, str]) -> str:
    return json.dumps(findings, indent=2, ensure_ascii=False)


class PlannerAgent:
    intent = Intent.PLAN

    def __init__(self, router: InferenceRouter):
        self.router = router

    async def create_plan(self, topic: str, feedback: Optional[str] = None) -> Plan:
        prompt = PLANNER_PROMPT.format(
            topic=topic,
            now=datetime.now(timezone.utc).isoformat(),
            feedback=feedback or "None",
        )
        result = await self.router.route(self.intent, prompt)
        if not result.ok:
            raise PlanningError(result.error or "planner backend failed")
        steps = result.data.get("steps")
        if not isinstance(steps, list):
            raise PlanningError("plan is missing a steps list")
        try:
            return Plan(reasoning=str(result.data.get("reasoning") or ""), steps=steps)
        except ValidationError as exc:
            raise PlanningError(f"malformed plan: {exc.errors()[0].get('msg')}") from exc


class ExecutorAgent:
    """Runs one step; whatever comes back, including failures, is the step's result text."""

    intent = Intent.EXECUTE

    def __init__(self, router: InferenceRouter, tools: WebTools, context_chars: int = 12000):
        self.router = router
        self.tools = tools
        self.context_chars = context_chars

    async def execute_step(self, step: Step, context: str) -> str:
        if step.tool == "web_search":
            query = step.params.get("query") or step.description
            return await self.tools.web_search(str(query))
        if step.tool == "scrape_url":
            raw = await self.tools.fetch_and_extract(str(step.params.get("url") or ""))
            prompt = EXTRACTION_PROMPT.format(description=step.description, source=raw[: self.context_chars])
            return await self._generate(prompt)
        if step.tool == "analyze_content":
            prompt = ANALYSIS_PROMPT.format(description=step.description, context=context)
            return await self._generate(prompt)
        return f"Unknown tool: {step.tool}"

    async def _generate(self, prompt: str) -> str:
        result = await self.router.route(self.intent, prompt)
        if not result.ok:
            return f"Error: {result.error}"
        return result.text


class VerifierAgent:
    intent = Intent.VERIFY

    def __init__(self, router: InferenceRouter):
        self.router = router

    async def verify(self, topic: str, plan: Plan, findings: Dict[str, str]) -> Verification:
        prompt = VERIFIER_PROMPT.format(topic=topic, reasoning=plan.reasoning or "n/a", findings=findings_json(findings))
        result = await self.router.route(self.intent, prompt)
        if not result.ok:
            raise VerificationError(result.error or "verifier backend failed")
        try:
            verification = Verification(**result.data)
        except ValidationError as exc:
            raise VerificationError(f"malformed verification: {exc.errors()[0].get('msg')}") from exc
        if not verification.passed and not (verification.feedback or "").strip():
            verification.feedback = DEFAULT_RETRY_FEEDBACK
        return verification


class ReportGenerator:
    intent = Intent.SYNTHESIZE

    def __init__(self, router: InferenceRouter):
        self.router = router

    async def generate(self, topic: str, findings: Dict[str, str]) -> str:
        prompt = REPORT_PROMPT.format(topic=topic, findings=findings_json(findings))
        result = await self.router.route(self.intent, prompt)
        if not result.ok:
            raise ReportError(result.error or "report backend failed")
        return result.text
