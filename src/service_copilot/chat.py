"""Interactive command-line chat over an in-memory demo business store."""

import argparse
import asyncio

from service_copilot.app import build_components
from service_copilot.core.models import EntityKind
from service_copilot.core.store import InMemoryBusinessStore
from service_copilot.errors import RateLimitExceededError
from service_copilot.server.models import ChatRequest
from service_copilot.tools.permissions import SubscriptionTier
from service_copilot.utils.env import configure_logging

DEMO_USER = "demo-user"


def seed_demo_store(store: InMemoryBusinessStore, user_id: str, tier: SubscriptionTier) -> None:
    """Populate a store with a few customers and records for local exploration."""
    store.set_subscription_tier(user_id, tier.value)
    store.set_payment_integration(user_id, True)
    customers = store.seed(
        EntityKind.CUSTOMERS,
        user_id,
        [
            {
                "name": "Acme Plumbing",
                "email": "billing@acme.example",
                "phone": "555-0100",
                "taxId": "12.345.678/0001-90",
                "paymentCustomerId": "cus_acme",
                "isDelinquent": False,
            },
            {"name": "Jane Doe", "phone": "555-0199", "isDelinquent": True},
        ],
    )
    store.seed(
        EntityKind.WORK_ORDERS,
        user_id,
        [
            {
                "customerId": customers[0]["id"],
                "customerName": customers[0]["name"],
                "title": "Replace water heater",
                "status": "SCHEDULED",
                "totalValue": 850.0,
            }
        ],
    )


async def async_main(
    verbose: bool = False, tier: SubscriptionTier = SubscriptionTier.PROFESSIONAL
) -> None:
    """Async entry point for the chat loop."""
    store = InMemoryBusinessStore()
    seed_demo_store(store, DEMO_USER, tier)
    components = build_components(business_store=store)
    gateway = components.gateway

    print(f"✅ Service Copilot ready ({tier.value} plan, model: {type(components.model).__name__})")
    print("Type your request (or 'exit' to quit):\n")

    conversation_id: str | None = None
    while True:
        try:
            message = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break
        if message.lower() in ["exit", "quit"]:
            break
        if not message:
            continue

        try:
            response = await gateway.chat(
                DEMO_USER, ChatRequest(message=message, conversation_id=conversation_id)
            )
        except RateLimitExceededError as e:
            print(f"⚠️ {e}")
            continue

        conversation_id = response.conversation_id
        print(f"\n{response.message}")
        if verbose:
            print(f"   [state: {response.state}]")
        print()


def main() -> None:
    """Synchronous entry point that runs the async main function."""
    parser = argparse.ArgumentParser(
        description="Service Copilot - interactive chat for field-service operations"
    )
    parser.add_argument(
        "--verbose", action="store_true", help="Show debug logs and conversation state"
    )
    parser.add_argument(
        "--tier",
        choices=[tier.value for tier in SubscriptionTier],
        default=SubscriptionTier.PROFESSIONAL.value,
        help="Subscription tier for the demo user",
    )
    args = parser.parse_args()

    configure_logging(args.verbose)
    asyncio.run(async_main(verbose=args.verbose, tier=SubscriptionTier(args.tier)))


if __name__ == "__main__":
    main()
