"""
Trading engine package

Modular order lifecycle components:
- orchestrator: OrderLifecycleOrchestrator (buy / cancel / sell / take-profit / watchers)
- stop_loss_trigger: tick-driven stop-loss
- position_manager: campaign ledger reads and writes
- trade_recorder: Trade rows and rolling statistics
- order_logger: audit Events
- retry: RetryPolicy
"""
