"""
Basic usage example for Agent Autopilot.

This demonstrates:
- Granting a bounded spending permission
- Submitting one-off and recurring intents
- Watching the spend limit block an oversized action
- Firing a scheduled run
- Viewing the execution history
"""

from datetime import timedelta

from agent_autopilot import (
    AutopilotSettings,
    ExecutionOrchestrator,
    SimulatedExecutor,
    SimulatedGrantCollaborator,
    StaticMarketData,
    configure_logging,
)
from agent_autopilot.types import utc_now

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
ROUTER = "0xE592427A0AEce92De3Edee1F18E0157C05861564"


def main():
    print("=== Agent Autopilot - Basic Usage Example ===\n")

    settings = AutopilotSettings()
    configure_logging("WARNING")
    orchestrator = ExecutionOrchestrator.from_settings(
        settings,
        grants=SimulatedGrantCollaborator(),
        executor=SimulatedExecutor(),
        market_data=StaticMarketData(gas_price="25"),
    )

    # Grant a permission: 100 USDC over the next week, router only
    print("1. Granting permission...")
    now = utc_now()
    permission = orchestrator.permissions.create_permission({
        "token_address": USDC,
        "max_spend_amount": "100",
        "start_time": now,
        "end_time": now + timedelta(days=7),
        "allowed_contracts": [ROUTER],
    })
    print(f"   Permission granted with ID: {permission.id}\n")

    # A one-off intent within bounds
    print("2. Submitting intents...")
    intent = {
        "description": "Swap 40 USDC for ETH",
        "token_address": USDC,
        "amount": "40",
        "contract_address": ROUTER,
        "permission_id": permission.id,
    }
    execution = orchestrator.submit_intent(intent)
    print(f"   [{execution.status.value}] {execution.explanation}")

    # Would take the total to 110, above the 100 cap
    execution = orchestrator.submit_intent({**intent, "description": "Swap 70 USDC for ETH", "amount": "70"})
    print(f"   [{execution.status.value}] {execution.explanation}")

    # Recurring intent: registered, and evaluated once right away
    execution = orchestrator.submit_intent({**intent, "description": "Buy 10 USDC of ETH every hour", "amount": "10"})
    print(f"   [{execution.status.value}] {execution.explanation}\n")

    # Nothing is due yet; a real deployment runs schedules.run_forever()
    print("3. Scheduled runs...")
    fired = orchestrator.schedules.run_pending()
    print(f"   Runs due now: {len(fired)}")
    for info in orchestrator.schedules.debug_info()["schedules"]:
        print(f"   {info['id']}: next run in {info['time_until_next']}")
    print()

    print("4. Spend ledger...")
    tracking = orchestrator.permissions.get_spend_tracking(permission.id)
    print(f"   Spent: {tracking.total_spent}  Remaining: {tracking.remaining_allowance}")
    for entry in tracking.spend_entries:
        print(f"   - {entry.amount} at {entry.timestamp.isoformat()} ({entry.transaction_reference[:12]}...)")
    print()

    print("5. Execution history (newest first)...")
    for execution in orchestrator.get_executions():
        print(f"   {execution.timestamp.isoformat()}  {execution.status.value:<8}  {execution.intent.description}")

    orchestrator.schedules.stop_all_schedules()

    print("\n=== Example Complete ===")
    print(f"\nState saved locally at:")
    print(f"{settings.storage_path}")


if __name__ == "__main__":
    main()
