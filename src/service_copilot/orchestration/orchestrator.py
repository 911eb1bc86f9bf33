"""Per-turn orchestration of the conversation state machine."""

import logging
import time
from typing import Any
from uuid import uuid4

from service_copilot.config import HISTORY_LIMIT
from service_copilot.core.knowledge_base import HttpKnowledgeBase, is_support_question
from service_copilot.errors import ConversationNotFoundError, StaleStateError
from service_copilot.llm.decoder import (
    AskUserResponse,
    PlanResponse,
    ToolCallResponse,
    decode_response,
    is_charge_commit_operation,
    is_plan,
    is_write_operation,
)
from service_copilot.llm.model_service import ChatMessage, ModelService, TokenUsage
from service_copilot.llm.prompts import format_agent_prompt, format_extraction_prompt
from service_copilot.orchestration import formatting
from service_copilot.orchestration.graph import build_turn_graph
from service_copilot.orchestration.state import (
    ConversationSnapshot,
    ConversationState,
    ExecutedTool,
    OrchestrationResult,
    PendingPlan,
    ReplyKind,
    classify_reply,
    is_rejection,
)
from service_copilot.orchestration.state_store import ConversationStateStore
from service_copilot.tools.executor import ToolExecutor
from service_copilot.tools.registry import PermissionGate
from service_copilot.tools.results import ToolContext, ToolResult
from service_copilot.utils.constants import (
    CHARGE_PREVIEW_OPERATION,
    EXTRACTION_MAX_TOKENS,
    EXTRACTION_TEMPERATURE,
    IDLE_MAX_TOKENS,
    IDLE_TEMPERATURE,
)

KB_TOP_K = 3
KB_MIN_SCORE = 0.5


class ChatOrchestrator:
    """Advances one conversation by one user message.

    Collaborators are injected so tests and the CLI can swap the model, the
    stores and the knowledge base.
    """

    def __init__(
        self,
        model: ModelService,
        state_store: ConversationStateStore,
        executor: ToolExecutor,
        gate: PermissionGate | None = None,
        knowledge_base: HttpKnowledgeBase | None = None,
        history_limit: int = HISTORY_LIMIT,
    ) -> None:
        self.model = model
        self.state_store = state_store
        self.executor = executor
        self.gate = gate or executor.gate
        self.knowledge_base = knowledge_base
        self.history_limit = history_limit
        self.logger = logging.getLogger(__name__)
        self.graph = build_turn_graph(self)

    async def process_message(
        self,
        user_id: str,
        conversation_id: str,
        message: str,
        context: ToolContext,
    ) -> OrchestrationResult:
        """Handle one user message and persist the resulting state.

        Unexpected failures never escape: the conversation is reset to IDLE
        and an apology is returned. A concurrent update to the same
        conversation yields a retry prompt without resetting.

        Raises:
            ConversationNotFoundError: Unknown conversation or owned by another user
        """
        start_time = time.monotonic()
        snapshot = await self.state_store.load(conversation_id)
        if snapshot is None or snapshot.user_id != user_id:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

        self.logger.info(f"Processing message in state: {snapshot.state.value}")
        turn_context = context.model_copy(
            update={"user_id": user_id, "conversation_id": conversation_id}
        )

        try:
            final_state = await self.graph.ainvoke(
                {
                    "snapshot": snapshot,
                    "message": message,
                    "context": turn_context,
                    "result": None,
                }
            )
            return final_state["result"]
        except StaleStateError as e:
            self.logger.warning(f"Concurrent update rejected: {e}")
            return OrchestrationResult(
                message=formatting.STALE_STATE_MESSAGE, state=snapshot.state
            )
        except Exception as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            self.logger.error(
                f"Orchestration error in conversation {conversation_id} after {duration_ms}ms: {e}"
            )
            try:
                await self.state_store.reset(conversation_id)
            except Exception as reset_error:
                self.logger.error(f"Failed to reset conversation {conversation_id}: {reset_error}")
            return OrchestrationResult(
                message=formatting.APOLOGY_MESSAGE, state=ConversationState.IDLE
            )

    async def _save(
        self, loaded: ConversationSnapshot, updated: ConversationSnapshot
    ) -> ConversationSnapshot:
        return await self.state_store.save(updated, expected_version=loaded.version)

    # IDLE

    async def _kb_context(self, message: str) -> str | None:
        if self.knowledge_base is None or not is_support_question(message):
            return None
        try:
            response = await self.knowledge_base.search(
                message, top_k=KB_TOP_K, min_score=KB_MIN_SCORE
            )
        except Exception as e:
            self.logger.warning(f"KB search failed: {e}")
            return None
        if response.results and response.formatted_context:
            self.logger.info(f"Found {len(response.results)} relevant KB results")
            return response.formatted_context
        return None

    async def handle_idle(
        self, snapshot: ConversationSnapshot, message: str, context: ToolContext
    ) -> OrchestrationResult:
        kb_context = await self._kb_context(message)
        history = await self.state_store.recent_messages(
            snapshot.conversation_id, self.history_limit
        )
        system_prompt = format_agent_prompt(
            self.gate.list_available(context.tier), kb_context=kb_context
        )
        messages = [
            ChatMessage(role="system", content=system_prompt),
            *[ChatMessage(role=m.role, content=m.content) for m in history],
            ChatMessage(role="user", content=message),
        ]

        completion = await self.model.complete(messages, IDLE_TEMPERATURE, IDLE_MAX_TOKENS)
        decoded = decode_response(completion.content)
        usage = completion.usage

        if not decoded.success or decoded.response is None:
            self.logger.warning(f"Failed to decode model response: {decoded.error}")
            return OrchestrationResult(
                message=formatting.FORMAT_ERROR_MESSAGE,
                state=ConversationState.IDLE,
                token_usage=usage,
            )

        response = decoded.response
        if isinstance(response, PlanResponse):
            return await self._handle_plan(snapshot, response, context, usage)
        if isinstance(response, ToolCallResponse):
            return await self._handle_tool_call(snapshot, response, context, usage)
        if isinstance(response, AskUserResponse):
            return OrchestrationResult(
                message=response.question,
                state=ConversationState.IDLE,
                data={"options": response.options} if response.options else None,
                token_usage=usage,
            )
        return OrchestrationResult(
            message=response.message,
            state=ConversationState.IDLE,
            data=response.data,
            token_usage=usage,
        )

    def _refuse(
        self, operation: str, context: ToolContext, usage: TokenUsage | None
    ) -> OrchestrationResult | None:
        """Refusal result when ``operation`` is unknown or not in the caller's tier."""
        if self.executor.entry(operation) is None:
            message = f"I can't perform the operation {operation}."
        elif not self.gate.is_allowed(operation, context.tier):
            message = formatting.format_upgrade_message(operation, context.tier.value)
        else:
            return None
        self.logger.info(f"Refused {operation} for tier {context.tier.value}")
        return OrchestrationResult(
            message=message, state=ConversationState.IDLE, token_usage=usage
        )

    async def _handle_plan(
        self,
        snapshot: ConversationSnapshot,
        plan: PlanResponse,
        context: ToolContext,
        usage: TokenUsage | None,
    ) -> OrchestrationResult:
        refusal = self._refuse(plan.action, context, usage)
        if refusal:
            return refusal

        pending = PendingPlan.from_plan(plan)
        if pending.missing_fields:
            await self._save(snapshot, snapshot.transition(ConversationState.PLANNING, pending))
            return OrchestrationResult(
                message=plan.message
                or formatting.format_missing_fields(plan.action, pending.missing_fields),
                state=ConversationState.PLANNING,
                pending_plan=pending,
                token_usage=usage,
            )

        await self._save(
            snapshot, snapshot.transition(ConversationState.AWAITING_CONFIRMATION, pending)
        )
        return OrchestrationResult(
            message=formatting.format_confirmation_request(
                pending.action, pending.execution_params()
            ),
            state=ConversationState.AWAITING_CONFIRMATION,
            pending_plan=pending,
            token_usage=usage,
        )

    async def _handle_tool_call(
        self,
        snapshot: ConversationSnapshot,
        call: ToolCallResponse,
        context: ToolContext,
        usage: TokenUsage | None,
    ) -> OrchestrationResult:
        refusal = self._refuse(call.tool, context, usage)
        if refusal:
            return refusal

        if is_write_operation(call.tool):
            pending = PendingPlan.from_tool_call(call.tool, call.params)
            await self._save(
                snapshot,
                snapshot.transition(ConversationState.AWAITING_CONFIRMATION, pending),
            )
            return OrchestrationResult(
                message=formatting.format_confirmation_request(call.tool, call.params),
                state=ConversationState.AWAITING_CONFIRMATION,
                pending_plan=pending,
                token_usage=usage,
            )

        result = await self.executor.execute(call.tool, call.params, context)
        executed = [self._executed(call.tool, result)]

        if not result.success:
            return OrchestrationResult(
                message=f"Could not fetch data: {result.error}",
                state=ConversationState.IDLE,
                executed_tools=executed,
                token_usage=usage,
            )

        if call.tool == CHARGE_PREVIEW_OPERATION:
            await self._save(
                snapshot,
                snapshot.transition(
                    ConversationState.IDLE,
                    billing_preview_id=result.data["previewId"],
                ),
            )
            message = formatting.format_preview_result(result.data)
        else:
            message = formatting.format_read_result(call.tool, result.data)

        return OrchestrationResult(
            message=message,
            state=ConversationState.IDLE,
            data=result.data,
            executed_tools=executed,
            token_usage=usage,
        )

    # PLANNING

    async def handle_planning(
        self, snapshot: ConversationSnapshot, message: str, context: ToolContext
    ) -> OrchestrationResult:
        plan = snapshot.pending_plan
        if plan is None:
            self.logger.warning(
                f"Conversation {snapshot.conversation_id} in PLANNING without a plan, resetting"
            )
            idle = await self._save(snapshot, snapshot.transition(ConversationState.IDLE))
            return await self.handle_idle(idle, message, context)

        if is_rejection(message):
            await self._save(snapshot, snapshot.transition(ConversationState.IDLE))
            return OrchestrationResult(
                message=formatting.CANCELLED_MESSAGE, state=ConversationState.IDLE
            )

        completion = await self.model.complete(
            [
                ChatMessage(
                    role="system",
                    content=format_extraction_prompt(
                        plan.action, plan.collected_fields, plan.missing_fields
                    ),
                ),
                ChatMessage(role="user", content=message),
            ],
            EXTRACTION_TEMPERATURE,
            EXTRACTION_MAX_TOKENS,
        )
        decoded = decode_response(completion.content)

        if not (decoded.success and is_plan(decoded.response)):
            if plan.missing_fields:
                reprompt = f"Please provide: {', '.join(plan.missing_fields)}"
            else:
                reprompt = formatting.MODIFICATION_PROMPT
            return OrchestrationResult(
                message=reprompt,
                state=ConversationState.PLANNING,
                pending_plan=plan,
                token_usage=completion.usage,
            )

        extracted: PlanResponse = decoded.response  # type: ignore[assignment]
        updated = plan.merge(extracted.collected_fields, extracted.missing_fields)

        if updated.missing_fields:
            await self._save(snapshot, snapshot.transition(ConversationState.PLANNING, updated))
            return OrchestrationResult(
                message=formatting.format_missing_fields(updated.action, updated.missing_fields),
                state=ConversationState.PLANNING,
                pending_plan=updated,
                token_usage=completion.usage,
            )

        await self._save(
            snapshot, snapshot.transition(ConversationState.AWAITING_CONFIRMATION, updated)
        )
        return OrchestrationResult(
            message=formatting.format_confirmation_request(
                updated.action, updated.execution_params()
            ),
            state=ConversationState.AWAITING_CONFIRMATION,
            pending_plan=updated,
            token_usage=completion.usage,
        )

    # AWAITING_CONFIRMATION

    async def handle_awaiting_confirmation(
        self, snapshot: ConversationSnapshot, message: str, context: ToolContext
    ) -> OrchestrationResult:
        plan = snapshot.pending_plan
        if plan is None:
            idle = await self._save(snapshot, snapshot.transition(ConversationState.IDLE))
            return await self.handle_idle(idle, message, context)

        reply = classify_reply(message)
        if reply == ReplyKind.REJECTION:
            await self._save(snapshot, snapshot.transition(ConversationState.IDLE))
            return OrchestrationResult(
                message=formatting.CANCELLED_MESSAGE, state=ConversationState.IDLE
            )

        if reply == ReplyKind.MODIFICATION:
            await self._save(snapshot, snapshot.transition(ConversationState.PLANNING, plan))
            return OrchestrationResult(
                message=formatting.MODIFICATION_PROMPT,
                state=ConversationState.PLANNING,
                pending_plan=plan,
            )

        if reply == ReplyKind.CONFIRMATION:
            return await self._execute_plan(snapshot, plan, context)

        return OrchestrationResult(
            message=formatting.CONFIRMATION_REPROMPT,
            state=ConversationState.AWAITING_CONFIRMATION,
            pending_plan=plan,
        )

    async def _execute_plan(
        self, snapshot: ConversationSnapshot, plan: PendingPlan, context: ToolContext
    ) -> OrchestrationResult:
        executing = await self._save(
            snapshot, snapshot.transition(ConversationState.EXECUTING, plan)
        )
        tool = plan.tool or plan.action
        params = plan.execution_params()
        changes: dict[str, Any] = {}

        if is_charge_commit_operation(tool):
            if not executing.billing_preview_id:
                await self._save(executing, executing.transition(ConversationState.IDLE))
                return OrchestrationResult(
                    message=formatting.PREVIEW_REQUIRED_MESSAGE,
                    state=ConversationState.IDLE,
                )
            params["previewId"] = executing.billing_preview_id
            changes["billing_preview_id"] = None

        if is_write_operation(tool) and not params.get("idempotencyKey"):
            params["idempotencyKey"] = self._generate_idempotency_key(
                snapshot.conversation_id
            )

        result = await self.executor.execute(tool, params, context)

        if tool == CHARGE_PREVIEW_OPERATION and result.success:
            changes["billing_preview_id"] = result.data["previewId"]
        changes["last_execution"] = {
            "tool": tool,
            "success": result.success,
            "data": result.data,
            "error": result.error,
        }
        await self._save(
            executing, executing.transition(ConversationState.IDLE, **changes)
        )

        executed = [self._executed(tool, result)]
        if not result.success:
            return OrchestrationResult(
                message=f"The operation failed: {result.error}",
                state=ConversationState.IDLE,
                executed_tools=executed,
            )

        if tool == CHARGE_PREVIEW_OPERATION:
            message = formatting.format_preview_result(result.data)
        else:
            message = formatting.format_success_message(tool, result.data)
        return OrchestrationResult(
            message=message,
            state=ConversationState.IDLE,
            data=result.data,
            executed_tools=executed,
        )

    # EXECUTING

    def handle_executing(self, snapshot: ConversationSnapshot) -> OrchestrationResult:
        return OrchestrationResult(
            message=formatting.BUSY_MESSAGE,
            state=ConversationState.EXECUTING,
            pending_plan=snapshot.pending_plan,
        )

    @staticmethod
    def _generate_idempotency_key(conversation_id: str) -> str:
        millis = int(time.time() * 1000)
        return f"ai_{conversation_id}_{millis}_{uuid4().hex[:8]}"

    @staticmethod
    def _executed(tool: str, result: ToolResult) -> ExecutedTool:
        return ExecutedTool(
            tool=tool,
            success=result.success,
            result=result.data if result.success else None,
            error=result.error,
            error_code=result.error_code.value if result.error_code else None,
        )
