import logging
from enum import Enum
from typing import Optional

from .llm import LLMResult, ThrottledBackend


logger = logging.getLogger("uvicorn.error")


class Intent(str, Enum):
    PLAN = "plan"
    EXECUTE = "execute"
    VERIFY = "verify"
    SYNTHESIZE = "synthesize"


class InferenceRouter:
    """Maps each intent to a backend, with a single-hop fallback for quality work.

    | intent     | primary         | fallback |
    |------------|-----------------|----------|
    | plan       | fast            | none     |
    | execute    | fast            | none     |
    | verify     | quality if set  | fast     |
    | synthesize | quality if set  | fast     |
    """

    def __init__(self, fast: ThrottledBackend, quality: Optional[ThrottledBackend] = None):
        self.fast = fast
        self.quality = quality

    @property
    def quality_enabled(self) -> bool:
        return self.quality is not None and self.quality.enabled

    async def plan(self, prompt: str) -> LLMResult:
        logger.info("[%s] planning", self.fast.name)
        return await self.fast.generate_structured(prompt)

    async def execute(self, prompt: str) -> LLMResult:
        logger.info("[%s] executing", self.fast.name)
        return await self.fast.generate_text(prompt)

    async def verify(self, prompt: str) -> LLMResult:
        if self.quality_enabled:
            logger.info("[%s] verifying", self.quality.name)
            result = await self.quality.generate_structured(prompt)
            if result.ok:
                return result
            logger.warning("[%s] verify failed (%s), falling back to %s", self.quality.name, result.error, self.fast.name)
        return await self.fast.generate_structured(prompt)

    async def synthesize(self, prompt: str) -> LLMResult:
        if self.quality_enabled:
            logger.info("[%s] synthesizing", self.quality.name)
            result = await self.quality.generate_text(prompt)
            if result.ok:
                return result
            logger.warning("[%s] synthesis failed (%s), falling back to %s", self.quality.name, result.error, self.fast.name)
        return await self.fast.generate_text(prompt)

    async def route(self, intent: Intent, prompt: str) -> LLMResult:
        handlers = {
            Intent.PLAN: self.plan,
            Intent.EXECUTE: self.execute,
            Intent.VERIFY: self.verify,
            Intent.SYNTHESIZE: self.synthesize,
        }
        return await handlers[Intent(intent)](prompt)
