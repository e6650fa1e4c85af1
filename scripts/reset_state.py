"""Reset order state in Redis (useful for testing)."""

import asyncio

from pizzeria.config import get_settings
from pizzeria.state.manager import StateManager

PATTERNS = ["order:*", "orders:*", "checkout:pending:*"]


async def reset_all_state() -> None:
    """Delete orders, counters and pending checkouts from Redis."""
    settings = get_settings()
    print(f"\n⚠️  WARNING: This will delete ALL orders from {settings.redis_url}!")
    response = input("Are you sure? (yes/no): ")

    if response.lower() != "yes":
        print("Cancelled.")
        return

    print("\nResetting state...")

    state_manager = StateManager(settings.redis_url)
    await state_manager.connect()

    for pattern in PATTERNS:
        deleted = await state_manager.delete_pattern(pattern)
        print(f"  ✓ {pattern}: {deleted} keys removed")

    await state_manager.disconnect()

    print("✓ Order state cleared from Redis\n")


if __name__ == "__main__":
    asyncio.run(reset_all_state())
