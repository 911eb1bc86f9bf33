"""Entry point that turns an authenticated chat request into an orchestrated turn."""

import logging
import time
from collections import deque
from collections.abc import Callable

from service_copilot.config import MAX_REQUESTS_PER_MINUTE
from service_copilot.core.store import BusinessStore
from service_copilot.errors import ConversationNotFoundError, RateLimitExceededError
from service_copilot.orchestration.orchestrator import ChatOrchestrator
from service_copilot.orchestration.state import ConversationSnapshot
from service_copilot.orchestration.state_store import ConversationStateStore
from service_copilot.server.models import ChatRequest, ChatResponse, ConversationInfoResponse
from service_copilot.tools.permissions import SubscriptionTier
from service_copilot.tools.results import ToolContext

RATE_LIMIT_WINDOW_SECONDS = 60.0


class ChatGateway:
    """Rate limiting, conversation ownership and history around the orchestrator."""

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        state_store: ConversationStateStore,
        business_store: BusinessStore,
        max_requests_per_minute: int = MAX_REQUESTS_PER_MINUTE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.orchestrator = orchestrator
        self.state_store = state_store
        self.business_store = business_store
        self.max_requests_per_minute = max_requests_per_minute
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._requests: dict[str, deque[float]] = {}
        self._last_prune = clock()

    def _prune_idle_users(self, now: float) -> None:
        idle = [
            user_id
            for user_id, window in self._requests.items()
            if not window or now - window[-1] >= RATE_LIMIT_WINDOW_SECONDS
        ]
        for user_id in idle:
            del self._requests[user_id]
        self._last_prune = now

    def check_rate_limit(self, user_id: str) -> None:
        """Record one request, raising when the sliding one-minute window is full."""
        now = self.clock()
        if now - self._last_prune >= RATE_LIMIT_WINDOW_SECONDS:
            self._prune_idle_users(now)
        window = self._requests.setdefault(user_id, deque())
        while window and now - window[0] >= RATE_LIMIT_WINDOW_SECONDS:
            window.popleft()
        if len(window) >= self.max_requests_per_minute:
            raise RateLimitExceededError(
                f"Rate limit of {self.max_requests_per_minute} messages per minute exceeded"
            )
        window.append(now)

    async def resolve_tier(self, user_id: str) -> SubscriptionTier:
        try:
            return SubscriptionTier.parse(
                await self.business_store.get_subscription_tier(user_id)
            )
        except Exception as e:
            self.logger.warning(f"Could not resolve subscription for {user_id}: {e}")
            return SubscriptionTier.FREE

    async def create_conversation(self, user_id: str) -> ConversationSnapshot:
        return await self.state_store.create(user_id)

    async def _owned_conversation(
        self, user_id: str, conversation_id: str
    ) -> ConversationSnapshot:
        snapshot = await self.state_store.load(conversation_id)
        if snapshot is None or snapshot.user_id != user_id:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return snapshot

    async def chat(
        self,
        user_id: str,
        request: ChatRequest,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ChatResponse:
        """Run one chat turn for ``user_id``.

        Raises:
            RateLimitExceededError: Too many messages in the last minute
            ConversationNotFoundError: Conversation missing or owned by someone else
        """
        self.check_rate_limit(user_id)

        if request.conversation_id:
            snapshot = await self._owned_conversation(user_id, request.conversation_id)
        else:
            snapshot = await self.create_conversation(user_id)
        conversation_id = snapshot.conversation_id

        context = ToolContext(
            user_id=user_id,
            conversation_id=conversation_id,
            tier=await self.resolve_tier(user_id),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        result = await self.orchestrator.process_message(
            user_id, conversation_id, request.message, context
        )

        await self.state_store.append_message(conversation_id, "user", request.message)
        await self.state_store.append_message(conversation_id, "assistant", result.message)

        return ChatResponse(
            conversation_id=conversation_id,
            message=result.message,
            state=result.state.value,
            plan=result.pending_plan,
            data=result.data,
            executed_tools=result.executed_tools or None,
            token_usage=result.token_usage,
        )

    async def get_conversation(
        self, user_id: str, conversation_id: str
    ) -> ConversationInfoResponse:
        snapshot = await self._owned_conversation(user_id, conversation_id)
        return ConversationInfoResponse(
            conversation_id=snapshot.conversation_id,
            state=snapshot.state.value,
            pending_plan=snapshot.pending_plan,
            billing_preview_id=snapshot.billing_preview_id,
            version=snapshot.version,
            message_count=await self.state_store.message_count(conversation_id),
            created_at=snapshot.created_at.isoformat(),
            updated_at=snapshot.updated_at.isoformat(),
        )
