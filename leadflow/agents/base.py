"""Base agent definition used by the orchestrator."""
from __future__ import annotations

import abc
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from pydantic import BaseModel

from leadflow.core.errors import (
    CompletionError,
    CompletionResponseError,
    ExecutionError,
    RoutingError,
    StageExecutionError,
)
from leadflow.core.json_extraction import extract_json
from leadflow.core.message_bus import MessageRouter
from leadflow.core.models import (
    AgentDescriptor,
    AgentMessage,
    AgentState,
    MessageType,
    Priority,
    StageResult,
)
from leadflow.core.payloads import ErrorReportPayload
from leadflow.observability import metrics
from leadflow.orchestration.run import ExecutionRun
from leadflow.services.completion import Completion, CompletionService
from leadflow.services.knowledge import KnowledgeBase, build_context
from leadflow.services.memory import MemoryEntry, MemoryService, MemoryType, build_memory_context
from leadflow.services.outbound import OutboundChannel

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class AgentSettings:
    """Completion parameters shared by every agent unless overridden."""

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 1500
    max_retries: int = 3


@dataclass
class AgentServices:
    """External collaborators an agent may call."""

    completion: CompletionService
    memory: Optional[MemoryService] = None
    knowledge: Optional[KnowledgeBase] = None
    outbound: Optional[OutboundChannel] = None
    sleep: Sleep = asyncio.sleep


class BaseAgent(abc.ABC):
    """Abstract agent: a private FIFO mailbox drained by its own task.

    Subclasses provide ``name``, ``specialization``, ``system_prompt`` and
    ``handle_message``. Per-run state lives in the :class:`ExecutionRun`
    resolved for each message, never on the agent.
    """

    name: str = ""
    specialization: str = ""

    def __init__(
        self,
        router: MessageRouter,
        services: AgentServices,
        settings: Optional[AgentSettings] = None,
        *,
        idle_interval: float = 0.5,
    ) -> None:
        self.descriptor = AgentDescriptor(name=self.name, specialization=self.specialization)
        self._router = router
        self._services = services
        self.settings = settings or AgentSettings()
        self._idle_interval = idle_interval
        self._mailbox: asyncio.Queue[AgentMessage] = asyncio.Queue()
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._started_event = asyncio.Event()
        self._background: Set[asyncio.Task[Any]] = set()

    @property
    def is_running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def pending_messages(self) -> int:
        return self._mailbox.qsize()

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Start the agent's background loop."""
        if self.is_running:
            return
        self._spawn_runner()
        await self._started_event.wait()

    def _spawn_runner(self) -> None:
        self._stop_event.clear()
        self._started_event.clear()
        self._runner = asyncio.create_task(self._run_safe(), name=f"agent:{self.name}")

    async def stop(self, grace: float = 1.0) -> None:
        """Signal the agent to stop; cancel it if a handler is still busy after ``grace``."""
        if self._runner is None:
            return
        self.descriptor.state = AgentState.STOPPING
        self._stop_event.set()
        runner = self._runner
        done, _ = await asyncio.wait({runner}, timeout=grace)
        if not done:
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
            self.descriptor.state = AgentState.STOPPED
        self._runner = None
        for task in list(self._background):
            task.cancel()

    async def _run_safe(self) -> None:
        """Wrap the main loop to handle exceptions gracefully."""
        try:
            self.descriptor.state = AgentState.RUNNING
            self._started_event.set()
            await self.on_start()
            while not self._stop_event.is_set():
                try:
                    message = await asyncio.wait_for(self._mailbox.get(), timeout=self._idle_interval)
                except asyncio.TimeoutError:
                    await self.on_idle()
                    continue
                await self._handle_message(message)
        except Exception as exc:  # noqa: BLE001
            self.descriptor.state = AgentState.FAILED
            self.descriptor.last_error = str(exc)
            self._started_event.set()
            logger.error(f"Agent {self.name} loop crashed: {exc}", exc_info=True)
        else:
            self.descriptor.state = AgentState.STOPPED
            self._started_event.set()
        finally:
            await self.on_stop()

    # -- messaging ---------------------------------------------------------

    async def receive_message(self, message: AgentMessage) -> None:
        """Queue ``message``; start draining if the loop is not running."""
        logger.debug(f"{self.name} received {message.type.value} from {message.sender}")
        self._mailbox.put_nowait(message)
        if not self.is_running:
            self._spawn_runner()

    async def send_message(
        self,
        to: str,
        type: MessageType,
        payload: Union[BaseModel, Mapping[str, Any]],
        priority: Priority = Priority.MEDIUM,
        *,
        execution_id: Optional[str] = None,
    ) -> AgentMessage:
        """Build a message and hand it to the router."""
        message = AgentMessage.create(
            self.name,
            to,
            type,
            payload,
            execution_id=execution_id,
            priority=priority,
        )
        await self._router.route_message(message)
        return message

    async def _handle_message(self, message: AgentMessage) -> None:
        run = self._router.get_run(message.execution_id)
        try:
            if message.execution_id is not None and run is None:
                logger.info(
                    f"{self.name} dropping {message.type.value} {message.id}: "
                    f"execution {message.execution_id} is no longer tracked"
                )
                return
            await self.handle_message(message, run)
        except Exception as exc:  # noqa: BLE001
            self.descriptor.last_error = str(exc)
            logger.error(f"{self.name} failed to process {message.id} from {message.sender}: {exc}", exc_info=True)
            if message.requires_response:
                await self._report_error(message, exc)
        finally:
            self.descriptor.task_count += 1

    async def _report_error(self, message: AgentMessage, exc: Exception) -> None:
        payload = ErrorReportPayload(
            error=str(exc),
            original_message_id=message.id,
            agent_name=self.name,
            lead_id=getattr(message.payload, "lead_id", None),
            context=dict(getattr(message.payload, "data", None) or {}),
        )
        try:
            await self.send_message(
                message.sender,
                MessageType.ERROR_REPORT,
                payload,
                Priority.HIGH,
                execution_id=message.execution_id,
            )
        except RoutingError as route_exc:
            logger.warning(f"{self.name} could not report error to {message.sender}: {route_exc}")

    @abc.abstractmethod
    async def handle_message(self, message: AgentMessage, run: Optional[ExecutionRun]) -> None:
        """Process one message for the run it belongs to."""

    @abc.abstractmethod
    def system_prompt(self) -> str:
        """Instruction template sent with every completion call."""

    async def on_start(self) -> None:
        """Hook executed once the agent loop begins."""
        return None

    async def on_stop(self) -> None:
        """Hook executed when the agent loop exits."""
        return None

    async def on_idle(self) -> None:
        """Hook invoked when no messages were received during the idle window."""
        return None

    # -- completion calls --------------------------------------------------

    def configure_ai(
        self,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> None:
        self.settings = AgentSettings(
            model=model or self.settings.model,
            temperature=self.settings.temperature if temperature is None else temperature,
            max_tokens=max_tokens or self.settings.max_tokens,
            max_retries=self.settings.max_retries,
        )

    async def process_with_ai(
        self,
        prompt: str,
        run: Optional[ExecutionRun],
        context: Optional[Dict[str, Any]] = None,
    ) -> Completion:
        """Single completion call with memory and knowledge-base augmentation."""
        user_prompt = await self._augment_prompt(prompt, run)
        if context:
            user_prompt = f"{user_prompt}\n\nDATA:\n{json.dumps(context, ensure_ascii=False, default=str)}"

        logger.info(f"{self.name} calling completion service ({self.settings.model})")
        try:
            completion = await self._services.completion.complete(
                self.system_prompt(),
                user_prompt,
                model=self.settings.model,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
            )
        except CompletionError:
            metrics.record_ai_call(self.name, ok=False)
            raise
        except Exception as exc:  # noqa: BLE001
            metrics.record_ai_call(self.name, ok=False)
            raise CompletionResponseError(f"AI processing failed for {self.name}", cause=exc) from exc

        metrics.record_ai_call(self.name, ok=True)
        logger.info(f"{self.name} received completion ({completion.usage.total_tokens} tokens)")
        if run is not None:
            run.context.add_conversation("user", prompt, agent_name=self.name)
            run.context.add_conversation("assistant", completion.text, agent_name=self.name)
            self._remember(run, prompt, completion.text)
        return completion

    async def process_with_ai_retry(
        self,
        prompt: str,
        run: Optional[ExecutionRun],
        context: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
    ) -> Completion:
        """``process_with_ai`` with ``2 ** attempt`` second backoff between attempts."""
        attempts = max(1, max_retries if max_retries is not None else self.settings.max_retries)
        for attempt in range(1, attempts):
            try:
                return await self.process_with_ai(prompt, run, context)
            except CompletionError as exc:
                delay = 2**attempt
                logger.warning(f"{self.name}: AI attempt {attempt}/{attempts} failed ({exc}); retrying in {delay}s")
                await self._services.sleep(delay)
        try:
            return await self.process_with_ai(prompt, run, context)
        except CompletionError:
            logger.error(f"{self.name}: AI call failed after {attempts} attempts")
            raise

    async def stream_with_ai(self, prompt: str, run: Optional[ExecutionRun]) -> AsyncIterator[str]:
        """Token stream for interactive callers; no retry."""
        stream = getattr(self._services.completion, "stream", None)
        if stream is None:
            completion = await self.process_with_ai(prompt, run)
            yield completion.text
            return
        user_prompt = await self._augment_prompt(prompt, run)
        async for delta in stream(
            self.system_prompt(),
            user_prompt,
            model=self.settings.model,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        ):
            yield delta

    async def _augment_prompt(self, prompt: str, run: Optional[ExecutionRun]) -> str:
        if run is None or not run.context.tenant_id:
            return prompt
        tenant_id = run.context.tenant_id
        sections = [prompt]

        if self._services.memory is not None:
            try:
                memory = await build_memory_context(
                    self._services.memory,
                    prompt,
                    tenant_id,
                    lead_id=run.lead_id,
                    agent_name=self.name,
                )
                if memory.summary:
                    sections.append(memory.summary)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"[memory] recall failed for {self.name}: {exc}")

        if self._services.knowledge is not None:
            try:
                chunks = await self._services.knowledge.search(prompt, tenant_id)
                context_text = build_context(chunks)
                if context_text:
                    sections.append(f"CONTEXT:\n{context_text}")
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"[rag] context lookup failed for {self.name}: {exc}")

        return "\n\n".join(sections)

    def _remember(self, run: ExecutionRun, prompt: str, response: str) -> None:
        memory = self._services.memory
        if memory is None or not run.context.tenant_id:
            return
        entry = MemoryEntry(
            tenant_id=run.context.tenant_id,
            lead_id=run.lead_id,
            agent_name=self.name,
            memory_type=MemoryType.CONVERSATION,
            content=f"Q: {prompt[:500]}\nA: {response[:1000]}",
            importance=5,
            metadata={"execution_id": run.execution_id},
        )
        task = asyncio.create_task(self._store_memory(memory, entry))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _store_memory(self, memory: MemoryService, entry: MemoryEntry) -> None:
        try:
            await memory.store(entry)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"[memory] store failed for {self.name}: {exc}")

    # -- parsing -----------------------------------------------------------

    def safe_parse_json(self, text: Optional[str]) -> Optional[Any]:
        """Structured value from model output, or ``None``; never raises."""
        extraction = extract_json(text)
        if not extraction.ok:
            metrics.record_json_parse_failure(self.name)
            logger.warning(f"{self.name}: no JSON in model output ({extraction.error})")
        return extraction.value

    def parse_object(self, text: Optional[str]) -> Optional[Dict[str, Any]]:
        value = self.safe_parse_json(text)
        return value if isinstance(value, dict) else None

    # -- tracker helpers ---------------------------------------------------

    async def record_stage_result(
        self,
        run: ExecutionRun,
        stage_name: str,
        result: Any,
        tokens: int = 0,
        success: bool = True,
        error: Optional[str] = None,
    ) -> Optional[StageResult]:
        return await run.tracker.record_stage_result(stage_name, self.name, result, tokens, success, error)

    async def fail_stage(self, run: ExecutionRun, stage_name: str, exc: Exception) -> StageExecutionError:
        """Record a failed stage and fail the run; returns the error to raise."""
        reason = f"{self.name} failed at {stage_name}: {exc}"
        await self.record_stage_result(run, stage_name, None, success=False, error=str(exc))
        await self.mark_execution_failed(run, reason)
        return StageExecutionError(reason, details={"stage": stage_name, "agent": self.name}, cause=exc)

    async def mark_execution_completed(self, run: ExecutionRun) -> bool:
        return await run.tracker.mark_completed()

    async def mark_execution_failed(self, run: ExecutionRun, reason: str) -> bool:
        return await run.tracker.mark_failed(reason)

    @staticmethod
    def require_run(run: Optional[ExecutionRun], message: AgentMessage) -> ExecutionRun:
        if run is None:
            raise ExecutionError(f"Message {message.id} is not bound to an execution")
        return run
