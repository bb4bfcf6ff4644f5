import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .agents import ExecutorAgent, PlannerAgent, ReportGenerator, VerifierAgent, findings_json
from .events import EventBus
from .job_store import JobStore
from .router import InferenceRouter
from .schemas import Job, JobStatus, LogLevel, Plan, Step
from .tools import WebTools


logger = logging.getLogger("uvicorn.error")


class SequentialScheduler:
    """Plan order, one step at a time."""

    def order(self, plan: Plan) -> List[Step]:
        return list(plan.steps)


class DependencyScheduler:
    """Stable topological order over declared dependencies, still one step at a time.

    Unknown dependency ids are ignored; a cycle falls back to plan order for the
    remaining steps.
    """

    def order(self, plan: Plan) -> List[Step]:
        graph = plan.dependency_graph()
        by_id = {step.step_id: step for step in plan.steps}
        pending = [step.step_id for step in plan.steps]
        done: set = set()
        ordered: List[Step] = []
        while pending:
            ready = next(
                (sid for sid in pending if all(dep in done or dep not in by_id for dep in graph[sid])),
                None,
            )
            if ready is None:
                ordered.extend(by_id[sid] for sid in pending)
                break
            pending.remove(ready)
            done.add(ready)
            ordered.append(by_id[ready])
        return ordered


SCHEDULERS = {"plan": SequentialScheduler, "dependencies": DependencyScheduler}


class JobOrchestrator:
    """Owns every job and drives Plan -> Execute -> Verify with bounded retries.

    All mutations of one job happen inside that job's task; distinct jobs run
    as independent tasks on the same loop.
    """

    def __init__(
        self,
        store: JobStore,
        bus: EventBus,
        router: InferenceRouter,
        tools: WebTools,
        *,
        max_attempts: int = 2,
        step_delay_s: float = 1.0,
        scrape_context_chars: int = 12000,
        scheduler: Optional[Any] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.bus = bus
        self.router = router
        self.planner = PlannerAgent(router)
        self.executor = ExecutorAgent(router, tools, context_chars=scrape_context_chars)
        self.verifier = VerifierAgent(router)
        self.reporter = ReportGenerator(router)
        self.max_attempts = max(1, max_attempts)
        self.step_delay_s = step_delay_s
        self.scheduler = scheduler or SequentialScheduler()
        self.sleep = sleep
        self.tasks: Dict[str, asyncio.Task] = {}

    async def create_job(self, topic: str) -> str:
        cleaned = (topic or "").strip()
        if not cleaned:
            raise ValueError("Topic is required")
        job = await self.store.create(cleaned)
        task = asyncio.create_task(self.run_job(job.job_id))
        self.tasks[job.job_id] = task
        task.add_done_callback(lambda _t, job_id=job.job_id: self.tasks.pop(job_id, None))
        logger.info("Job %s queued: %s", job.job_id, cleaned)
        return job.job_id

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get(job_id)

    async def list_jobs(self) -> List[Job]:
        return await self.store.list_jobs()

    async def cancel_job(self, job_id: str, timeout: float = 5.0) -> bool:
        job = await self.store.get(job_id)
        if job is None:
            raise KeyError(job_id)
        if job.is_terminal:
            return False
        task = self.tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task], timeout=timeout)
        # A task cancelled before its first step never reaches run_job's handler.
        if not job.is_terminal:
            await self._mark_cancelled(job)
        return True

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        task = self.tasks.get(job_id)
        if task is not None:
            await asyncio.wait([task], timeout=timeout)
        return await self.store.get(job_id)

    async def shutdown(self) -> None:
        running = {job_id: t for job_id, t in self.tasks.items() if not t.done()}
        for task in running.values():
            task.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)
        for job_id in running:
            job = await self.store.get(job_id)
            if job is not None and not job.is_terminal:
                await self._mark_cancelled(job)

    async def log(self, job_id: str, message: str, level: LogLevel = "info") -> None:
        entry = await self.store.append_log(job_id, message, level)
        await self.bus.emit(job_id, "log", entry.model_dump())

    async def set_status(self, job: Job, status: JobStatus) -> None:
        job.status = status
        await self.store.save(job)
        await self.bus.emit(job.job_id, "status", {"status": status})

    async def complete(self, job: Job, report: str) -> None:
        job.final_report = report
        await self.set_status(job, "completed")
        await self.bus.emit(job.job_id, "result", {"report": report})
        logger.info("Job %s completed", job.job_id)

    async def fail(self, job: Job, message: str) -> None:
        await self.log(job.job_id, message, "error")
        await self.set_status(job, "failed")
        logger.warning("Job %s failed: %s", job.job_id, message)

    async def _mark_cancelled(self, job: Job) -> None:
        await self.log(job.job_id, "Job cancelled.", "warning")
        await self.set_status(job, "cancelled")
        logger.info("Job %s cancelled", job.job_id)

    async def run_job(self, job_id: str) -> None:
        job = await self.store.get(job_id)
        if job is None:
            return
        try:
            await self._run(job)
        except asyncio.CancelledError:
            await self._mark_cancelled(job)
            raise
        except Exception as exc:
            logger.exception("Job %s crashed", job_id)
            await self.fail(job, f"Error: {exc}")

    async def _run(self, job: Job) -> None:
        feedback: Optional[str] = None
        findings: Dict[str, str] = {}
        while job.attempts < self.max_attempts:
            job.attempts += 1
            await self.log(job.job_id, f"Attempt {job.attempts}/{self.max_attempts}")

            await self.set_status(job, "planning")
            await self.log(job.job_id, "Planning research steps...")
            plan = await self.planner.create_plan(job.topic, feedback)
            job.plan = plan
            await self.store.save(job)
            await self.bus.emit(job.job_id, "plan", plan.model_dump())
            await self.log(job.job_id, f"{len(plan.steps)} steps planned")
            if not plan.steps:
                await self.log(job.job_id, "Planner returned no steps.", "warning")

            await self.set_status(job, "executing")
            findings = await self._execute(job, plan)

            await self.set_status(job, "verifying")
            await self.log(job.job_id, "Verifying research quality...")
            verification = await self.verifier.verify(job.topic, plan, findings)
            if verification.quality_score is not None:
                await self.log(job.job_id, f"Quality score: {verification.quality_score:g}/100")

            if verification.passed:
                report = verification.final_report or ""
                if not report.strip():
                    await self.log(job.job_id, "Verifier passed without a report; synthesizing one.", "warning")
                    report = await self.reporter.generate(job.topic, findings)
                await self.log(job.job_id, "Research completed!")
                await self.complete(job, report)
                return

            feedback = verification.feedback
            await self.log(job.job_id, f"Verification failed: {feedback}", "warning")

        if findings:
            await self.log(job.job_id, "Retries exhausted; generating best-effort report from last findings.", "warning")
            report = await self.reporter.generate(job.topic, findings)
            await self.log(job.job_id, "Report generated!")
            await self.complete(job, report)
            return

        await self.fail(job, "Research failed: no findings to report.")

    async def _execute(self, job: Job, plan: Plan) -> Dict[str, str]:
        findings: Dict[str, str] = {}
        for step in self.scheduler.order(plan):
            step.status = "active"
            await self.log(job.job_id, f"[{step.tool}] {step.description or step.step_id}")
            result = await self.executor.execute_step(step, findings_json(findings))
            step.result = result
            step.status = "completed"
            findings[step.step_id] = result
            await self.store.save(job)
            await self.log(job.job_id, f"Done ({len(result)} chars)")
            if self.step_delay_s > 0:
                await self.sleep(self.step_delay_s)
        return findings
