"""Tests for the conversation state machine."""

from unittest.mock import AsyncMock

import pytest

from service_copilot.core.knowledge_base import KbResult, KbSearchResponse
from service_copilot.core.models import EntityKind
from service_copilot.core.store import InMemoryBusinessStore
from service_copilot.errors import ConversationNotFoundError, StaleStateError
from service_copilot.orchestration import formatting
from service_copilot.orchestration.orchestrator import ChatOrchestrator
from service_copilot.orchestration.state import (
    ConversationSnapshot,
    ConversationState,
    PendingPlan,
)
from service_copilot.orchestration.state_store import InMemoryConversationStore
from service_copilot.tools.executor import ToolExecutor
from service_copilot.tools.results import ToolContext
from tests.fixtures.mock_clients import ScriptedModelService
from tests.fixtures.sample_data import CONVERSATION_ID, OTHER_USER_ID, USER_ID

CREATE_PLAN = {
    "type": "PLAN",
    "action": "customers.create",
    "collectedFields": {},
    "missingFields": ["name"],
}


async def _send(
    orchestrator: ChatOrchestrator, message: str, context: ToolContext
):
    return await orchestrator.process_message(USER_ID, CONVERSATION_ID, message, context)


async def _state(state_store: InMemoryConversationStore) -> ConversationSnapshot:
    return await state_store.load(CONVERSATION_ID)


@pytest.mark.unit
class TestIdle:
    """Test handling of fresh requests."""

    async def test_informative_response(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue({"type": "RESPONSE", "message": "Hello!"})

        result = await _send(orchestrator, "hi", pro_context)

        assert result.message == "Hello!"
        assert result.state == ConversationState.IDLE
        assert result.token_usage.total_tokens == 15
        _, temperature, max_tokens = scripted_model.calls[0]
        assert (temperature, max_tokens) == (0.7, 2048)

    async def test_plain_text_response(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue("Just some prose.")

        result = await _send(orchestrator, "hi", pro_context)

        assert result.message == "Just some prose."

    async def test_undecodable_response(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue({"type": "PLAN", "missingFields": ["name"]})

        result = await _send(orchestrator, "create a customer", pro_context)

        assert result.message == formatting.FORMAT_ERROR_MESSAGE
        assert result.state == ConversationState.IDLE

    async def test_ask_user(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {"type": "ASK_USER", "question": "Which customer?", "options": ["Acme", "Jane"]}
        )

        result = await _send(orchestrator, "charge someone", pro_context)

        assert result.message == "Which customer?"
        assert result.data == {"options": ["Acme", "Jane"]}

    async def test_read_tool_is_executed(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue({"type": "CALL_TOOL", "tool": "customers.search", "params": {}})

        result = await _send(orchestrator, "list customers", pro_context)

        assert result.message == "Found 2 result(s)."
        assert result.data["total"] == 2
        assert result.executed_tools[0].tool == "customers.search"
        assert result.executed_tools[0].success is True

    async def test_read_tool_failure(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {"type": "CALL_TOOL", "tool": "customers.get", "params": {"id": "nope"}}
        )

        result = await _send(orchestrator, "show customer nope", pro_context)

        assert result.message == "Could not fetch data: Customer not found"
        assert result.executed_tools[0].error_code == "ENTITY_NOT_FOUND"

    async def test_write_tool_call_needs_confirmation(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        business_store: InMemoryBusinessStore,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {"type": "CALL_TOOL", "tool": "customers.create", "params": {"name": "Bob"}}
        )

        result = await _send(orchestrator, "add Bob", pro_context)

        assert result.state == ConversationState.AWAITING_CONFIRMATION
        assert formatting.CONFIRMATION_QUESTION in result.message
        assert business_store.create_calls[EntityKind.CUSTOMERS] == 0
        snapshot = await _state(state_store)
        assert snapshot.pending_plan.tool == "customers.create"
        assert snapshot.version == 1

    async def test_plan_for_tier_without_permission(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        free_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {"type": "PLAN", "action": "billing.createCharge", "collectedFields": {}}
        )

        result = await _send(orchestrator, "charge Acme 100", free_context)

        assert result.message == formatting.format_upgrade_message("billing.createCharge", "FREE")
        assert result.state == ConversationState.IDLE
        snapshot = await _state(state_store)
        assert snapshot.pending_plan is None
        assert snapshot.version == 0

    async def test_unknown_operation(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue({"type": "CALL_TOOL", "tool": "customers.delete", "params": {}})

        result = await _send(orchestrator, "delete Acme", pro_context)

        assert result.message == "I can't perform the operation customers.delete."
        assert result.executed_tools == []

    async def test_history_and_kb_context_in_prompt(
        self,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        executor: ToolExecutor,
        mock_knowledge_base: AsyncMock,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        mock_knowledge_base.search.return_value = KbSearchResponse(
            results=[KbResult(title="Boletos", content="Boletos need one business day")],
            total_results=1,
            formatted_context="[1] Boletos\nBoletos need one business day",
        )
        orchestrator = ChatOrchestrator(
            scripted_model, state_store, executor, knowledge_base=mock_knowledge_base
        )
        await state_store.append_message(CONVERSATION_ID, "user", "earlier question")
        await state_store.append_message(CONVERSATION_ID, "assistant", "earlier answer")
        scripted_model.queue({"type": "RESPONSE", "message": "One business day."})

        await _send(orchestrator, "How do boletos work?", pro_context)

        messages, _, _ = scripted_model.calls[0]
        assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
        assert "Boletos need one business day" in messages[0].content
        assert messages[-1].content == "How do boletos work?"
        mock_knowledge_base.search.assert_awaited_once_with(
            "How do boletos work?", top_k=3, min_score=0.5
        )

    async def test_kb_failure_is_not_fatal(
        self,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        executor: ToolExecutor,
        mock_knowledge_base: AsyncMock,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        mock_knowledge_base.search.side_effect = RuntimeError("kb down")
        orchestrator = ChatOrchestrator(
            scripted_model, state_store, executor, knowledge_base=mock_knowledge_base
        )
        scripted_model.queue({"type": "RESPONSE", "message": "Not sure."})

        result = await _send(orchestrator, "why is this failing?", pro_context)

        assert result.message == "Not sure."


@pytest.mark.unit
class TestPlanningAndConfirmation:
    """Test collecting missing fields and confirming plans."""

    async def test_collect_confirm_execute(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        business_store: InMemoryBusinessStore,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            CREATE_PLAN,
            {
                "type": "PLAN",
                "action": "customers.create",
                "collectedFields": {"name": "Bob's Garage"},
                "missingFields": [],
            },
        )

        first = await _send(orchestrator, "create a customer", pro_context)
        second = await _send(orchestrator, "Bob's Garage", pro_context)
        third = await _send(orchestrator, "yes", pro_context)

        assert first.state == ConversationState.PLANNING
        assert first.message == "To run customers.create, I still need:\n- name"
        assert second.state == ConversationState.AWAITING_CONFIRMATION
        assert "- name: Bob's Garage" in second.message
        _, temperature, max_tokens = scripted_model.calls[1]
        assert (temperature, max_tokens) == (0.3, 1024)

        assert third.state == ConversationState.IDLE
        assert third.message == "Customer created successfully."
        assert third.executed_tools[0].success is True
        assert business_store.create_calls[EntityKind.CUSTOMERS] == 1

        snapshot = await _state(state_store)
        assert snapshot.state == ConversationState.IDLE
        assert snapshot.pending_plan is None
        assert snapshot.last_execution["tool"] == "customers.create"
        assert snapshot.last_execution["success"] is True

    async def test_extraction_still_missing(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {**CREATE_PLAN, "missingFields": ["name", "email"]},
            {
                "type": "PLAN",
                "action": "customers.create",
                "collectedFields": {"name": "Bob"},
                "missingFields": ["email"],
            },
        )

        await _send(orchestrator, "create a customer", pro_context)
        result = await _send(orchestrator, "Bob", pro_context)

        assert result.state == ConversationState.PLANNING
        assert result.pending_plan.collected_fields == {"name": "Bob"}
        assert result.pending_plan.missing_fields == ["email"]

    async def test_extraction_failure_reprompts(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(CREATE_PLAN, {"type": "RESPONSE", "message": "Huh?"})

        await _send(orchestrator, "create a customer", pro_context)
        result = await _send(orchestrator, "hmm", pro_context)

        assert result.message == "Please provide: name"
        assert result.state == ConversationState.PLANNING
        assert (await _state(state_store)).pending_plan.missing_fields == ["name"]

    async def test_rejection_while_planning(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(CREATE_PLAN)

        await _send(orchestrator, "create a customer", pro_context)
        result = await _send(orchestrator, "never mind", pro_context)

        assert result.message == formatting.CANCELLED_MESSAGE
        assert (await _state(state_store)).state == ConversationState.IDLE
        assert len(scripted_model.calls) == 1

    async def test_field_value_mentioning_cancel_is_extracted(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {**CREATE_PLAN, "missingFields": ["notes"]},
            {
                "type": "PLAN",
                "action": "customers.create",
                "collectedFields": {"notes": "cancel old contract first"},
                "missingFields": [],
            },
        )

        await _send(orchestrator, "create a customer", pro_context)
        result = await _send(orchestrator, "notes: cancel old contract first", pro_context)

        assert result.state == ConversationState.AWAITING_CONFIRMATION
        assert result.pending_plan.collected_fields == {"notes": "cancel old contract first"}
        assert len(scripted_model.calls) == 2

    async def test_deeply_nested_extraction_reprompts(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(CREATE_PLAN, "[" * 100000)

        await _send(orchestrator, "create a customer", pro_context)
        result = await _send(orchestrator, "Bob", pro_context)

        assert result.message == "Please provide: name"
        assert result.state == ConversationState.PLANNING
        snapshot = await _state(state_store)
        assert snapshot.state == ConversationState.PLANNING
        assert snapshot.pending_plan.missing_fields == ["name"]

    @pytest.mark.parametrize(
        "reply,state,message",
        [
            ("no", ConversationState.IDLE, formatting.CANCELLED_MESSAGE),
            ("change the name", ConversationState.PLANNING, formatting.MODIFICATION_PROMPT),
            ("hmm", ConversationState.AWAITING_CONFIRMATION, formatting.CONFIRMATION_REPROMPT),
            (
                "yes, don't cancel it",
                ConversationState.AWAITING_CONFIRMATION,
                formatting.CONFIRMATION_REPROMPT,
            ),
        ],
    )
    async def test_confirmation_replies(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        business_store: InMemoryBusinessStore,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
        reply: str,
        state: ConversationState,
        message: str,
    ) -> None:
        scripted_model.queue(
            {"type": "CALL_TOOL", "tool": "customers.create", "params": {"name": "Bob"}}
        )
        await _send(orchestrator, "add Bob", pro_context)

        result = await _send(orchestrator, reply, pro_context)

        assert result.state == state
        assert result.message == message
        assert business_store.create_calls[EntityKind.CUSTOMERS] == 0
        snapshot = await _state(state_store)
        assert snapshot.state == state
        assert (snapshot.pending_plan is None) == (state == ConversationState.IDLE)

    async def test_failed_execution(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {
                "type": "CALL_TOOL",
                "tool": "workOrders.create",
                "params": {"customerId": "cust-other", "title": "Fix"},
            }
        )
        await _send(orchestrator, "new work order", pro_context)

        result = await _send(orchestrator, "yes", pro_context)

        assert result.state == ConversationState.IDLE
        assert result.message == "The operation failed: Customer not found"
        assert result.executed_tools[0].error_code == "ENTITY_NOT_FOUND"

    async def test_executing_state_is_busy(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        plan = PendingPlan.from_tool_call("customers.create", {"name": "Bob"})
        await state_store.save(conversation.transition(ConversationState.EXECUTING, plan), 0)

        result = await _send(orchestrator, "hello?", pro_context)

        assert result.message == formatting.BUSY_MESSAGE
        assert result.state == ConversationState.EXECUTING
        assert scripted_model.calls == []


@pytest.mark.unit
class TestBilling:
    """Test the preview-then-commit protocol."""

    async def test_commit_without_preview(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        business_store: InMemoryBusinessStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue({"type": "CALL_TOOL", "tool": "billing.createCharge", "params": {}})

        confirmation = await _send(orchestrator, "create the charge", pro_context)
        result = await _send(orchestrator, "yes, confirm", pro_context)

        assert formatting.BILLING_WARNING in confirmation.message
        assert result.message == formatting.PREVIEW_REQUIRED_MESSAGE
        assert result.state == ConversationState.IDLE
        assert business_store.create_calls[EntityKind.CHARGES] == 0

    async def test_preview_then_commit(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        business_store: InMemoryBusinessStore,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {
                "type": "CALL_TOOL",
                "tool": "billing.previewCharge",
                "params": {
                    "customerId": "cust-acme",
                    "value": 180.0,
                    "billingType": "PIX",
                    "dueDate": "2026-03-20",
                },
            },
            {"type": "CALL_TOOL", "tool": "billing.createCharge", "params": {}},
        )

        preview = await _send(orchestrator, "preview a 180 PIX charge for Acme", pro_context)
        preview_id = preview.data["previewId"]
        assert (await _state(state_store)).billing_preview_id == preview_id
        assert "Do you want to create this charge?" in preview.message

        await _send(orchestrator, "go ahead and create it", pro_context)
        result = await _send(orchestrator, "yes, confirm", pro_context)

        assert result.message == "Charge created successfully."
        assert result.data["value"] == 180.0
        assert business_store.create_calls[EntityKind.CHARGES] == 1
        assert (await business_store.get_preview(preview_id)).is_consumed
        assert (await _state(state_store)).billing_preview_id is None


@pytest.mark.unit
class TestFailureHandling:
    async def test_unknown_conversation(
        self, orchestrator: ChatOrchestrator, pro_context: ToolContext
    ) -> None:
        with pytest.raises(ConversationNotFoundError):
            await _send(orchestrator, "hi", pro_context)

    async def test_conversation_of_another_user(
        self,
        orchestrator: ChatOrchestrator,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        with pytest.raises(ConversationNotFoundError):
            await orchestrator.process_message(
                OTHER_USER_ID, CONVERSATION_ID, "hi", pro_context
            )

    async def test_model_error_resets_conversation(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(CREATE_PLAN)
        await _send(orchestrator, "create a customer", pro_context)
        scripted_model.complete = AsyncMock(side_effect=RuntimeError("model down"))

        result = await _send(orchestrator, "Bob", pro_context)

        assert result.message == formatting.APOLOGY_MESSAGE
        assert result.state == ConversationState.IDLE
        snapshot = await _state(state_store)
        assert snapshot.state == ConversationState.IDLE
        assert snapshot.pending_plan is None

    async def test_concurrent_update(
        self,
        orchestrator: ChatOrchestrator,
        scripted_model: ScriptedModelService,
        state_store: InMemoryConversationStore,
        conversation: ConversationSnapshot,
        pro_context: ToolContext,
    ) -> None:
        scripted_model.queue(
            {"type": "CALL_TOOL", "tool": "customers.create", "params": {"name": "Bob"}}
        )
        state_store.save = AsyncMock(side_effect=StaleStateError(CONVERSATION_ID, 0, 1))

        result = await _send(orchestrator, "add Bob", pro_context)

        assert result.message == formatting.STALE_STATE_MESSAGE
        assert result.state == ConversationState.IDLE
