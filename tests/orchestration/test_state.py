"""Tests for pending plans and reply classification."""

import pytest

from service_copilot.llm.decoder import PlanResponse
from service_copilot.orchestration.graph import route_by_state
from service_copilot.orchestration.state import (
    ConversationSnapshot,
    ConversationState,
    PendingPlan,
    ReplyKind,
    classify_reply,
    is_confirmation,
    is_rejection,
)
from tests.fixtures.sample_data import FIXED_NOW


@pytest.mark.unit
class TestPendingPlan:
    def test_from_plan(self) -> None:
        plan = PendingPlan.from_plan(
            PlanResponse(
                action="customers.create",
                collected_fields={"name": "Acme"},
                missing_fields=["email", "email", "name"],
            )
        )

        assert plan.tool == "customers.create"
        assert plan.missing_fields == ["email"]
        assert plan.is_complete is False

    def test_merge_returns_new_plan(self) -> None:
        plan = PendingPlan(
            action="customers.create",
            tool="customers.create",
            collected_fields={"name": "Acme"},
            missing_fields=["email"],
            params={"name": "Acme"},
        )

        merged = plan.merge({"email": "ops@acme.example"}, ["email"])

        assert merged is not plan
        assert plan.collected_fields == {"name": "Acme"}
        assert merged.collected_fields == {"name": "Acme", "email": "ops@acme.example"}
        assert merged.missing_fields == []
        assert merged.is_complete is True

    def test_execution_params_prefer_collected(self) -> None:
        plan = PendingPlan.from_tool_call("quotes.create", {"customerId": "c1", "items": []})
        merged = plan.merge({"customerId": "c2"}, [])

        assert merged.execution_params() == {"customerId": "c2", "items": []}


@pytest.mark.unit
class TestReplyClassification:
    @pytest.mark.parametrize(
        "text", ["yes", "Yes!", "ok", "yes, confirm", "I confirm", "go ahead", "sure."]
    )
    def test_confirmation(self, text: str) -> None:
        assert is_confirmation(text)
        assert classify_reply(text) == ReplyKind.CONFIRMATION

    @pytest.mark.parametrize("text", ["no", "Nope", "cancel", "please cancel that", "forget it"])
    def test_rejection(self, text: str) -> None:
        assert is_rejection(text)
        assert classify_reply(text) == ReplyKind.REJECTION

    @pytest.mark.parametrize("text", ["change the email", "can you update the value"])
    def test_modification(self, text: str) -> None:
        assert classify_reply(text) == ReplyKind.MODIFICATION

    @pytest.mark.parametrize("text", ["maybe", "yes but later", "what does this do"])
    def test_ambiguous(self, text: str) -> None:
        assert classify_reply(text) == ReplyKind.AMBIGUOUS

    def test_rejection_wins(self) -> None:
        assert classify_reply("cancel, I want to change it") == ReplyKind.REJECTION

    @pytest.mark.parametrize(
        "text",
        [
            "yes, don't cancel it",
            "ok, no cancellation fee",
            "confirm, do not cancel",
            "notes: cancel old contract first",
            "no problem",
        ],
    )
    def test_cancel_inside_reply_is_not_rejection(self, text: str) -> None:
        assert not is_rejection(text)
        assert classify_reply(text) != ReplyKind.REJECTION

    @pytest.mark.parametrize("text", ["no, cancel it", "Stop.", "don't", "never mind!"])
    def test_short_rejections(self, text: str) -> None:
        assert is_rejection(text)


@pytest.mark.unit
class TestSnapshot:
    def _snapshot(self, state: ConversationState) -> ConversationSnapshot:
        return ConversationSnapshot(
            conversation_id="c",
            user_id="u",
            state=state,
            created_at=FIXED_NOW,
            updated_at=FIXED_NOW,
        )

    def test_transition_keeps_other_fields(self) -> None:
        snapshot = self._snapshot(ConversationState.IDLE).model_copy(
            update={"billing_preview_id": "pv-1"}
        )
        plan = PendingPlan.from_tool_call("customers.create", {"name": "A"})

        moved = snapshot.transition(ConversationState.AWAITING_CONFIRMATION, plan)
        back = moved.transition(ConversationState.IDLE)

        assert moved.billing_preview_id == "pv-1"
        assert moved.pending_plan == plan
        assert back.pending_plan is None
        assert snapshot.state == ConversationState.IDLE

    @pytest.mark.parametrize(
        "state,node",
        [
            (ConversationState.IDLE, "idle"),
            (ConversationState.PLANNING, "planning"),
            (ConversationState.AWAITING_CONFIRMATION, "awaiting_confirmation"),
            (ConversationState.EXECUTING, "executing"),
        ],
    )
    def test_routing(self, state: ConversationState, node: str) -> None:
        assert route_by_state({"snapshot": self._snapshot(state)}) == node
